"""
Timeline Reconstructor.

Turns a job's stage audit trail into contiguous, non-overlapping segments
spanning ``[timeline start, effective end]``. Reconstruction is pure: it
works on plain snapshots (``JobSnapshot``, ``AuditSnapshot``) plus the
tenant's ``StageGraph``, so a dashboard can rebuild many jobs in parallel
without touching the session from worker threads.

    start          start_date at midnight UTC, else the first audit entry, else now
    effective end  end_date for completed/cancelled jobs,
                   otherwise min(now, end_date) (now when there is no end_date)

Segments are clipped to that window. A segment that ends before it starts
is dropped and reported as a TimelineAnomaly; reconstruction never fails
on bad history.

``stage_duration_report`` aggregates the same ledger per stage (dwell time
against each stage's min/max duration hours).
"""

import logging
import statistics
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from flask import current_app, has_app_context
from sqlalchemy import select

from app.core.exceptions import TimelineAnomaly
from app.models import db
from app.models.job import Job
from app.models.stage import TERMINAL_STATUSES
from app.models.stage_audit import StageAuditLog
from app.services.helpers.scoped_queries import get_scoped
from app.services.stage_colors import ColorContext, SegmentRef, resolve_color
from app.services.stage_config_service import load_stage_graph
from app.utils.helpers import as_utc, day_start_utc

logger = logging.getLogger(__name__)


# ── Snapshots ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class JobSnapshot:
    id: int
    tenant_id: int
    status: str
    start_date: date | None = None
    end_date: date | None = None
    current_stage_id: int | None = None

    @classmethod
    def from_model(cls, job: Job) -> "JobSnapshot":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            status=job.status,
            start_date=job.start_date,
            end_date=job.end_date,
            current_stage_id=job.current_stage_id,
        )


@dataclass(frozen=True)
class AuditSnapshot:
    id: int
    created_at: datetime
    from_stage_id: int | None = None
    to_stage_id: int | None = None
    from_stage_name: str | None = None
    to_stage_name: str | None = None
    from_status: str | None = None
    to_status: str | None = None

    @classmethod
    def from_model(cls, entry: StageAuditLog) -> "AuditSnapshot":
        return cls(
            id=entry.id,
            created_at=as_utc(entry.created_at),
            from_stage_id=entry.from_stage_id,
            to_stage_id=entry.to_stage_id,
            from_stage_name=entry.from_stage_name,
            to_stage_name=entry.to_stage_name,
            from_status=entry.from_status,
            to_status=entry.to_status,
        )

    @property
    def has_from_stage(self) -> bool:
        return self.from_stage_id is not None or bool(self.from_stage_name)


@dataclass(frozen=True)
class TimelineSegment:
    stage_id: int | None
    stage_name: str
    color: str
    start: datetime
    end: datetime
    is_current: bool = False

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_hours(self) -> float:
        return round(self.duration.total_seconds() / 3600, 4)

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "color": self.color,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_hours": self.duration_hours,
            "is_current": self.is_current,
        }


@dataclass
class TimelineResult:
    job_id: int
    start: datetime
    end: datetime
    current_stage_id: int | None = None
    segments: list = field(default_factory=list)
    anomalies: list = field(default_factory=list)

    @property
    def total_duration(self) -> timedelta:
        return sum((s.duration for s in self.segments), timedelta())

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "current_stage_id": self.current_stage_id,
            "segments": [s.to_dict() for s in self.segments],
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


# ── Window ───────────────────────────────────────────────────────────────────


def _now(now) -> datetime:
    return as_utc(now) if now is not None else datetime.now(UTC)


def timeline_start(job, history, now=None) -> datetime:
    if job.start_date is not None:
        return day_start_utc(job.start_date)
    if history:
        return min(as_utc(e.created_at) for e in history)
    return _now(now)


def _configured_terminal_statuses() -> tuple:
    if has_app_context():
        return tuple(current_app.config.get("TERMINAL_JOB_STATUSES", TERMINAL_STATUSES))
    return tuple(TERMINAL_STATUSES)


def effective_end(job, now=None, terminal_statuses=None) -> datetime:
    now = _now(now)
    if terminal_statuses is None:
        terminal_statuses = _configured_terminal_statuses()
    end = day_start_utc(job.end_date)
    if job.status in terminal_statuses:
        return end if end is not None else now
    return min(now, end) if end is not None else now


# ── Reconstruction ───────────────────────────────────────────────────────────


def build_segments(job, history, graph, now=None, terminal_statuses=None) -> TimelineResult:
    """Reconstruct ``job``'s stage timeline from its audit ``history``.

    Args:
        job: JobSnapshot (or anything with the same attributes).
        history: AuditSnapshot sequence, any order.
        graph: the tenant's StageGraph, used for colour and name lookups.
        now: reference time for running jobs (defaults to the current time).
        terminal_statuses: job statuses whose timeline ends at ``end_date``;
            read from ``TERMINAL_JOB_STATUSES`` when omitted.

    When the current stage's span falls outside the window (an entry after
    a closed job's ``end_date``) it is reported as an anomaly and no
    segment carries ``is_current``; ``current_stage_id`` on the result
    still names the stage.
    """
    now = _now(now)
    entries = sorted(history, key=lambda e: (as_utc(e.created_at), e.id))
    start = timeline_start(job, entries, now)
    end = effective_end(job, now, terminal_statuses)
    ctx = ColorContext(graph=graph, current_stage=graph.stage(job.current_stage_id) if graph else None)

    # (ref, raw_start, raw_end)
    spans = []
    if not entries:
        spans.append((
            SegmentRef(stage_id=job.current_stage_id, status=job.status, is_current=True),
            start, end,
        ))
    else:
        first = entries[0]
        if first.has_from_stage:
            spans.append((
                SegmentRef(first.from_stage_id, first.from_stage_name, first.from_status),
                start, as_utc(first.created_at),
            ))
        for idx, entry in enumerate(entries):
            seg_start = as_utc(entry.created_at)
            if idx == 0 and not first.has_from_stage:
                # the first recorded stage also covers the time before its entry
                seg_start = min(seg_start, start)
            is_last = idx == len(entries) - 1
            seg_end = end if is_last else as_utc(entries[idx + 1].created_at)
            spans.append((
                SegmentRef(entry.to_stage_id, entry.to_stage_name, entry.to_status, is_current=is_last),
                seg_start, seg_end,
            ))

    result = TimelineResult(job_id=job.id, start=start, end=end, current_stage_id=job.current_stage_id)
    for ref, raw_start, raw_end in spans:
        if raw_start > raw_end:
            _record_anomaly(result, "inverted_segment", ref, raw_start, raw_end,
                            "segment ends before it starts")
            continue
        seg_start, seg_end = max(raw_start, start), min(raw_end, end)
        if seg_start > seg_end:
            _record_anomaly(result, "outside_window", ref, raw_start, raw_end,
                            f"segment lies outside [{start.isoformat()}, {end.isoformat()}]")
            continue
        name, color = resolve_color(ref, ctx)
        result.segments.append(TimelineSegment(
            stage_id=ref.stage_id,
            stage_name=name,
            color=color,
            start=seg_start,
            end=seg_end,
            is_current=ref.is_current,
        ))
    return result


def _record_anomaly(result, kind, ref, start, end, detail) -> None:
    anomaly = TimelineAnomaly(kind=kind, stage_id=ref.stage_id, start=start, end=end, detail=detail)
    result.anomalies.append(anomaly)
    logger.warning(
        "Timeline anomaly job=%s kind=%s stage=%s: %s", result.job_id, kind, ref.stage_id, detail,
        extra={"job_id": result.job_id},
    )


def build_timelines(items, graph, now=None, max_workers: int | None = None,
                    terminal_statuses=None) -> dict:
    """Reconstruct many timelines concurrently.

    Worker threads have no app context, so ``now`` and the terminal-status
    set are fixed here, in the calling thread, and handed to every worker.

    Args:
        items: iterable of ``(JobSnapshot, [AuditSnapshot, ...])`` pairs.
        graph: shared StageGraph (immutable, safe across threads).

    Returns:
        dict job_id -> TimelineResult
    """
    items = list(items)
    if not items:
        return {}
    now = _now(now)
    if terminal_statuses is None:
        terminal_statuses = _configured_terminal_statuses()
    if max_workers is None:
        max_workers = current_app.config.get("TIMELINE_MAX_WORKERS", 8) if has_app_context() else 8
    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = executor.map(
            lambda pair: build_segments(pair[0], pair[1], graph, now, terminal_statuses), items,
        )
        return {r.job_id: r for r in results}


# ── Progress ─────────────────────────────────────────────────────────────────


def progress_percentage(job, now=None, *, min_pct: int | None = None, max_pct: int | None = None) -> int:
    """Date-based progress: 0 before start, 100 once completed, 0 if cancelled,
    otherwise elapsed share of ``[start_date, end_date]`` clamped to
    ``[min_pct, max_pct]``."""
    if min_pct is None or max_pct is None:
        config = current_app.config if has_app_context() else {}
        min_pct = config.get("PROGRESS_MIN_PCT", 5) if min_pct is None else min_pct
        max_pct = config.get("PROGRESS_MAX_PCT", 95) if max_pct is None else max_pct

    if job.status == "completed":
        return 100
    if job.status == "cancelled":
        return 0
    now = _now(now)
    start = day_start_utc(job.start_date)
    if start is None or now < start:
        return 0
    end = day_start_utc(job.end_date)
    if end is None or end <= start:
        return min_pct
    share = (now - start).total_seconds() / (end - start).total_seconds() * 100
    return int(round(max(min_pct, min(max_pct, share))))


def stage_progress(job, graph) -> int:
    """Position of the current stage among active stages, as a percentage."""
    active = graph.active_stages
    position = graph.position(job.current_stage_id)
    if not active or position is None:
        return 0
    return int(round(position / len(active) * 100))


# ── DB-backed wrappers ───────────────────────────────────────────────────────


def _history_snapshots(job_ids) -> dict:
    by_job = {job_id: [] for job_id in job_ids}
    if not by_job:
        return by_job
    rows = db.session.execute(
        select(StageAuditLog)
        .where(StageAuditLog.job_id.in_(list(by_job)))
        .order_by(StageAuditLog.created_at, StageAuditLog.id)
    ).scalars()
    for row in rows:
        by_job[row.job_id].append(AuditSnapshot.from_model(row))
    return by_job


def job_timeline(tenant_id: int, job_id: int, now=None) -> dict:
    """Timeline, anomalies and progress indicators for one job."""
    job = get_scoped(Job, job_id, tenant_id=tenant_id)
    graph = load_stage_graph(tenant_id)
    snapshot = JobSnapshot.from_model(job)
    result = build_segments(snapshot, _history_snapshots([job.id])[job.id], graph, now)
    payload = result.to_dict()
    payload["progress_percentage"] = progress_percentage(snapshot, now)
    payload["stage_progress_percentage"] = stage_progress(snapshot, graph)
    return payload


def job_progress(tenant_id: int, job_id: int, now=None) -> dict:
    job = get_scoped(Job, job_id, tenant_id=tenant_id)
    graph = load_stage_graph(tenant_id)
    snapshot = JobSnapshot.from_model(job)
    return {
        "job_id": job.id,
        "status": job.status,
        "progress_percentage": progress_percentage(snapshot, now),
        "stage_progress_percentage": stage_progress(snapshot, graph),
        "stage_position": graph.position(job.current_stage_id),
        "total_stages": len(graph.active_stages),
    }


def stage_duration_report(tenant_id: int, date_from=None, date_to=None) -> dict:
    """Per-stage dwell statistics from the audit ledger.

    Each ledger entry that leaves a stage closes one stay there, and its
    ``duration_in_previous_stage_hours`` is that stay's length. Entries with
    no recorded duration (a job's first transition) are counted in
    ``transitions_out`` but not in the statistics. ``over_max`` counts stays
    longer than the stage's ``max_duration_hours``; ``under_min`` counts
    stays shorter than ``min_duration_hours``.

    ``date_from`` / ``date_to`` bound the entry ``created_at`` (inclusive).
    """
    graph = load_stage_graph(tenant_id)
    stmt = select(
        StageAuditLog.from_stage_id,
        StageAuditLog.from_stage_name,
        StageAuditLog.duration_in_previous_stage_hours,
    ).where(
        StageAuditLog.tenant_id == tenant_id,
        StageAuditLog.from_stage_id.is_not(None),
    )
    if date_from is not None:
        stmt = stmt.where(StageAuditLog.created_at >= as_utc(date_from))
    if date_to is not None:
        stmt = stmt.where(StageAuditLog.created_at <= as_utc(date_to))

    exits = {}
    durations = {}
    names = {}
    for stage_id, stage_name, hours in db.session.execute(stmt):
        exits[stage_id] = exits.get(stage_id, 0) + 1
        names.setdefault(stage_id, stage_name)
        if hours is not None:
            durations.setdefault(stage_id, []).append(hours)

    stage_ids = [s.id for s in graph.active_stages]
    stage_ids += sorted(sid for sid in exits if sid not in stage_ids)

    rows = []
    for stage_id in stage_ids:
        info = graph.stage(stage_id)
        hours = durations.get(stage_id, [])
        max_hours = info.max_duration_hours if info else None
        min_hours = info.min_duration_hours if info else 0
        rows.append({
            "stage_id": stage_id,
            "stage_name": info.name if info else names.get(stage_id),
            "active": bool(info and info.active),
            "transitions_out": exits.get(stage_id, 0),
            "measured_stays": len(hours),
            "avg_duration_hours": round(statistics.fmean(hours), 2) if hours else None,
            "median_duration_hours": round(statistics.median(hours), 2) if hours else None,
            "min_duration_hours": min_hours,
            "max_duration_hours": max_hours,
            "over_max": sum(1 for h in hours if max_hours is not None and h > max_hours),
            "under_min": sum(1 for h in hours if min_hours and h < min_hours),
        })
    return {"tenant_id": tenant_id, "config_version": graph.version, "stages": rows}


def tenant_timelines(tenant_id: int, job_ids=None, now=None) -> dict:
    """Timelines for many jobs of one tenant (all jobs when ``job_ids`` is None)."""
    stmt = select(Job).where(Job.tenant_id == tenant_id)
    if job_ids is not None:
        stmt = stmt.where(Job.id.in_(list(job_ids)))
    jobs = [JobSnapshot.from_model(j) for j in db.session.execute(stmt.order_by(Job.id)).unique().scalars()]
    graph = load_stage_graph(tenant_id)
    histories = _history_snapshots([j.id for j in jobs])
    results = build_timelines(((j, histories[j.id]) for j in jobs), graph, now)
    return {
        "tenant_id": tenant_id,
        "timelines": [results[j.id].to_dict() for j in jobs],
    }

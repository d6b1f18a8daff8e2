"""
Tests: stage timeline reconstruction and progress indicators.

Covers:
  1. segments are contiguous, non-overlapping and sum to the window length
  2. effective end for running, completed and cancelled jobs
  3. first audit entry without a from-stage covers the time before it
  4. degenerate history is dropped as anomalies, never raised
  5. colour attribution chain (live stage, id, name, status, neutral)
  6. date-based progress percentage with clamping
  7. concurrent reconstruction equals serial reconstruction
  8. DB-backed job_timeline / tenant_timelines wrappers
  9. per-stage dwell statistics from the audit ledger

Reconstruction is pure, so most cases build JobSnapshot / AuditSnapshot
values directly instead of going through the ORM.
"""

import logging
from datetime import UTC, date, datetime, timedelta

import pytest

from app.services import progression_service as engine
from app.services import timeline_service as tl
from app.services.stage_colors import (
    NEUTRAL_COLOR,
    STATUS_COLORS,
    ColorContext,
    SegmentRef,
    resolve_color,
)
from app.services.stage_config_service import StageGraph, StageInfo


def _dt(day, hour=0):
    return datetime(2024, 1, day, hour, tzinfo=UTC)


def _stage(id, seq, name, color, active=True):
    return StageInfo(
        id=id, name=name, color=color, sequence_order=seq,
        stage_type="standard", maps_to_status="active", active=active,
    )


GRAPH = StageGraph(
    tenant_id=1,
    version=1,
    stages=(
        _stage(1, 1, "1/4 Lead", "#111111"),
        _stage(2, 2, "2/4 Build", "#222222"),
        _stage(3, 3, "3/4 Inspect", "#333333"),
        _stage(4, 4, "4/4 Old Step", "#444444", active=False),
    ),
)


def _job(status="active", start=date(2024, 1, 1), end=date(2024, 1, 31), current=3, id=1):
    return tl.JobSnapshot(id=id, tenant_id=1, status=status, start_date=start, end_date=end,
                          current_stage_id=current)


def _entry(id, when, frm, to, frm_name=None, to_name=None, to_status="active"):
    return tl.AuditSnapshot(
        id=id, created_at=when, from_stage_id=frm, to_stage_id=to,
        from_stage_name=frm_name, to_stage_name=to_name,
        from_status="active" if frm is not None or frm_name else None, to_status=to_status,
    )


HISTORY = [
    _entry(1, _dt(5), 1, 2, "1/4 Lead", "2/4 Build"),
    _entry(2, _dt(12), 2, 3, "2/4 Build", "3/4 Inspect"),
]


def _assert_contiguous(result):
    segs = result.segments
    assert segs[0].start == result.start
    assert segs[-1].end == result.end
    for prev, cur in zip(segs, segs[1:]):
        assert prev.end == cur.start
    assert result.total_duration == result.end - result.start


# ═════════════════════════════════════════════════════════════════════════════
# Segments & window
# ═════════════════════════════════════════════════════════════════════════════


class TestSegments:
    def test_running_job(self):
        result = tl.build_segments(_job(), HISTORY, GRAPH, now=_dt(20))
        assert [s.stage_id for s in result.segments] == [1, 2, 3]
        assert result.end == _dt(20)
        _assert_contiguous(result)
        assert result.segments[-1].is_current is True
        assert result.segments[0].duration == timedelta(days=4)
        assert result.anomalies == []

    def test_history_order_does_not_matter(self):
        result = tl.build_segments(_job(), list(reversed(HISTORY)), GRAPH, now=_dt(20))
        assert [s.stage_id for s in result.segments] == [1, 2, 3]

    def test_no_history_single_segment(self):
        result = tl.build_segments(_job(current=1), [], GRAPH, now=_dt(10))
        [seg] = result.segments
        assert (seg.stage_id, seg.start, seg.end) == (1, _dt(1), _dt(10))
        assert seg.color == "#111111"
        assert seg.is_current is True

    def test_completed_job_ends_at_end_date(self):
        result = tl.build_segments(_job(status="completed"), HISTORY, GRAPH, now=datetime(2024, 6, 1, tzinfo=UTC))
        assert result.end == _dt(31)
        _assert_contiguous(result)

    def test_cancelled_job_ends_at_end_date(self):
        result = tl.build_segments(_job(status="cancelled"), HISTORY, GRAPH, now=datetime(2024, 6, 1, tzinfo=UTC))
        assert result.end == _dt(31)

    def test_completed_without_end_date_uses_now(self):
        result = tl.build_segments(_job(status="completed", end=None), HISTORY, GRAPH, now=_dt(20))
        assert result.end == _dt(20)

    def test_running_job_past_end_date_is_capped(self):
        result = tl.build_segments(_job(), HISTORY, GRAPH, now=datetime(2024, 3, 1, tzinfo=UTC))
        assert result.end == _dt(31)
        _assert_contiguous(result)

    def test_no_start_date_uses_first_entry(self):
        result = tl.build_segments(_job(start=None), HISTORY, GRAPH, now=_dt(20))
        assert result.start == _dt(5)
        # the from-stage segment collapses to zero length but is kept
        assert result.segments[0].duration == timedelta(0)
        _assert_contiguous(result)

    def test_first_entry_without_from_stage_extends_back(self):
        history = [
            _entry(1, _dt(3), None, 1, None, "1/4 Lead"),
            _entry(2, _dt(8), 1, 2, "1/4 Lead", "2/4 Build"),
        ]
        result = tl.build_segments(_job(current=2), history, GRAPH, now=_dt(10))
        assert [s.stage_id for s in result.segments] == [1, 2]
        assert result.segments[0].start == _dt(1)
        _assert_contiguous(result)

    def test_to_dict(self):
        payload = tl.build_segments(_job(), HISTORY, GRAPH, now=_dt(20)).to_dict()
        assert payload["job_id"] == 1
        assert payload["segments"][0]["duration_hours"] == 96.0
        assert payload["segments"][0]["start"] == "2024-01-01T00:00:00+00:00"


class TestAnomalies:
    def test_entry_before_start_date(self, caplog):
        """An audit entry predating start_date yields an inverted from-stage segment."""
        history = [_entry(1, datetime(2023, 12, 28, tzinfo=UTC), 1, 2), _entry(2, _dt(12), 2, 3)]
        with caplog.at_level(logging.WARNING, logger="app.services.timeline_service"):
            result = tl.build_segments(_job(), history, GRAPH, now=_dt(20))

        assert [a.kind for a in result.anomalies] == ["inverted_segment"]
        assert result.anomalies[0].stage_id == 1
        assert [s.stage_id for s in result.segments] == [2, 3]
        _assert_contiguous(result)
        assert "Timeline anomaly" in caplog.text

    def test_segment_entirely_before_window(self):
        history = [
            _entry(1, datetime(2023, 12, 20, tzinfo=UTC), 1, 2),
            _entry(2, datetime(2023, 12, 24, tzinfo=UTC), 2, 3),
        ]
        result = tl.build_segments(_job(), history, GRAPH, now=_dt(20))
        assert {a.kind for a in result.anomalies} == {"inverted_segment", "outside_window"}
        [seg] = result.segments
        assert seg.stage_id == 3
        _assert_contiguous(result)

    def test_entry_after_completion(self):
        history = HISTORY + [_entry(3, datetime(2024, 2, 5, tzinfo=UTC), 3, 1)]
        result = tl.build_segments(_job(status="completed"), history, GRAPH, now=datetime(2024, 3, 1, tzinfo=UTC))
        assert [a.kind for a in result.anomalies] == ["inverted_segment"]
        _assert_contiguous(result)

    def test_current_span_outside_window_leaves_no_current_segment(self):
        history = HISTORY + [_entry(3, datetime(2024, 2, 5, tzinfo=UTC), 3, 1)]
        job = _job(status="completed", current=1)
        result = tl.build_segments(job, history, GRAPH, now=datetime(2024, 3, 1, tzinfo=UTC))
        assert result.anomalies[0].stage_id == 1
        assert not any(s.is_current for s in result.segments)
        assert result.segments[-1].stage_id == 3
        assert result.to_dict()["current_stage_id"] == 1

    def test_anomaly_dict(self):
        history = [_entry(1, datetime(2023, 12, 28, tzinfo=UTC), 1, 2)]
        payload = tl.build_segments(_job(), history, GRAPH, now=_dt(20)).to_dict()
        assert payload["anomalies"][0]["kind"] == "inverted_segment"


# ═════════════════════════════════════════════════════════════════════════════
# Colours
# ═════════════════════════════════════════════════════════════════════════════


class TestColors:
    def test_live_stage_wins_for_current_segment(self):
        live = _stage(3, 3, "3/4 Final Inspection", "#ABCDEF")
        ctx = ColorContext(graph=GRAPH, current_stage=live)
        assert resolve_color(SegmentRef(3, "3/4 Inspect", "active", is_current=True), ctx) == (
            "3/4 Final Inspection", "#ABCDEF",
        )

    def test_retired_stage_resolved_by_id(self):
        ctx = ColorContext(graph=GRAPH)
        assert resolve_color(SegmentRef(4, "whatever", "active"), ctx) == ("4/4 Old Step", "#444444")

    def test_deleted_stage_resolved_by_name(self):
        ctx = ColorContext(graph=GRAPH)
        assert resolve_color(SegmentRef(99, "2/9 Build", "active"), ctx) == ("2/9 Build", "#222222")

    def test_status_colour_fallback(self):
        ctx = ColorContext(graph=GRAPH)
        assert resolve_color(SegmentRef(99, "Gone", "on_hold"), ctx) == ("Gone", STATUS_COLORS["on_hold"])

    def test_neutral_fallback(self):
        ctx = ColorContext(graph=GRAPH)
        assert resolve_color(SegmentRef(None), ctx) == ("Unknown stage", NEUTRAL_COLOR)

    def test_custom_resolver_chain(self):
        ctx = ColorContext(graph=GRAPH)
        always_red = lambda ref, ctx: ("Red", "#FF0000")  # noqa: E731
        assert resolve_color(SegmentRef(1), ctx, resolvers=[always_red]) == ("Red", "#FF0000")


# ═════════════════════════════════════════════════════════════════════════════
# Progress
# ═════════════════════════════════════════════════════════════════════════════


class TestProgress:
    @pytest.mark.parametrize("now,expected", [
        (datetime(2023, 12, 25, tzinfo=UTC), 0),
        (_dt(1, 1), 5),
        (_dt(16), 50),
        (_dt(31), 95),
        (datetime(2024, 5, 1, tzinfo=UTC), 95),
    ])
    def test_running_job(self, now, expected):
        assert tl.progress_percentage(_job(), now) == expected

    def test_completed_is_100(self):
        assert tl.progress_percentage(_job(status="completed"), _dt(2)) == 100

    def test_cancelled_is_0(self):
        assert tl.progress_percentage(_job(status="cancelled"), _dt(20)) == 0

    def test_no_start_date(self):
        assert tl.progress_percentage(_job(start=None), _dt(20)) == 0

    def test_no_end_date_reports_minimum(self):
        assert tl.progress_percentage(_job(end=None), _dt(20)) == 5

    def test_explicit_bounds(self):
        assert tl.progress_percentage(_job(), _dt(31), min_pct=0, max_pct=100) == 100

    def test_stage_progress(self):
        assert tl.stage_progress(_job(current=1), GRAPH) == 33
        assert tl.stage_progress(_job(current=3), GRAPH) == 100
        assert tl.stage_progress(_job(current=4), GRAPH) == 0


# ═════════════════════════════════════════════════════════════════════════════
# Batch
# ═════════════════════════════════════════════════════════════════════════════


class TestBatch:
    def test_concurrent_equals_serial(self):
        items = [
            (_job(id=i, status="completed" if i % 3 == 0 else "active"), HISTORY)
            for i in range(1, 25)
        ]
        batch = tl.build_timelines(items, GRAPH, now=_dt(20), max_workers=4)
        assert set(batch) == set(range(1, 25))
        for job, history in items:
            serial = tl.build_segments(job, history, GRAPH, now=_dt(20))
            assert batch[job.id].to_dict() == serial.to_dict()

    def test_terminal_statuses_reach_worker_threads(self):
        items = [(_job(id=1, status="on_hold"), HISTORY), (_job(id=2), HISTORY)]
        batch = tl.build_timelines(items, GRAPH, now=_dt(10), max_workers=2,
                                   terminal_statuses=("completed", "cancelled", "on_hold"))
        assert batch[1].end == _dt(31)
        assert batch[2].end == _dt(10)

    def test_empty_batch(self):
        assert tl.build_timelines([], GRAPH) == {}


# ═════════════════════════════════════════════════════════════════════════════
# DB-backed wrappers
# ═════════════════════════════════════════════════════════════════════════════


class TestJobTimeline:
    def test_timeline_follows_audit_trail(self, pipeline, make_job):
        job = make_job(start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
        engine.submit_response(pipeline.tenant_id, job.id, pipeline.q_a, "Yes", "u-1", now=_dt(5))
        engine.submit_response(pipeline.tenant_id, job.id, pipeline.q_b, "95", "u-1", now=_dt(12))

        payload = tl.job_timeline(pipeline.tenant_id, job.id, now=_dt(16))
        assert [s["stage_id"] for s in payload["segments"]] == [pipeline.a, pipeline.b, pipeline.c]
        assert [s["color"] for s in payload["segments"]] == ["#C7D2FE", "#93C5FD", "#FB923C"]
        assert payload["segments"][-1]["is_current"] is True
        assert payload["end"] == "2024-01-16T00:00:00+00:00"
        assert payload["progress_percentage"] == 50
        assert payload["stage_progress_percentage"] == 60
        assert sum(s["duration_hours"] for s in payload["segments"]) == pytest.approx(15 * 24)

    def test_job_progress(self, pipeline, make_job):
        job = make_job()
        progress = tl.job_progress(pipeline.tenant_id, job.id, now=_dt(16))
        assert progress["stage_position"] == 1
        assert progress["total_stages"] == 5
        assert progress["stage_progress_percentage"] == 20

    def test_tenant_timelines(self, pipeline, make_job):
        first = make_job("One")
        second = make_job("Two")
        engine.submit_response(pipeline.tenant_id, second.id, pipeline.q_a, "Yes", "u-1", now=_dt(5))
        payload = tl.tenant_timelines(pipeline.tenant_id, now=_dt(10))
        by_id = {t["job_id"]: t for t in payload["timelines"]}
        assert set(by_id) == {first.id, second.id}
        assert len(by_id[first.id]["segments"]) == 1
        assert len(by_id[second.id]["segments"]) == 2

    def test_tenant_timelines_subset(self, pipeline, make_job):
        first = make_job("One")
        make_job("Two")
        payload = tl.tenant_timelines(pipeline.tenant_id, job_ids=[first.id], now=_dt(10))
        assert [t["job_id"] for t in payload["timelines"]] == [first.id]

    def test_batch_matches_single_with_configured_terminal_statuses(self, app, monkeypatch, pipeline, make_job):
        monkeypatch.setitem(app.config, "TERMINAL_JOB_STATUSES", ("completed", "cancelled", "on_hold"))
        job = make_job(status="on_hold", start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))

        single = tl.job_timeline(pipeline.tenant_id, job.id, now=_dt(10))
        [batch] = tl.tenant_timelines(pipeline.tenant_id, job_ids=[job.id], now=_dt(10))["timelines"]
        assert single["end"] == "2024-01-31T00:00:00+00:00"
        assert batch["end"] == single["end"]
        assert batch["segments"] == single["segments"]


class TestStageDurationReport:
    def _history(self, pipeline, make_job):
        """Job one leaves B after 4h and C after 25h; job two leaves B after 2h."""
        one, two = make_job("One"), make_job("Two")
        tid = pipeline.tenant_id
        engine.submit_response(tid, one.id, pipeline.q_a, "Yes", "u-1", now=_dt(1, 10))
        engine.submit_response(tid, two.id, pipeline.q_a, "Yes", "u-1", now=_dt(1, 11))
        engine.submit_response(tid, two.id, pipeline.q_b, "91", "u-1", now=_dt(1, 13))
        engine.submit_response(tid, one.id, pipeline.q_b, "95", "u-1", now=_dt(1, 14))
        engine.submit_response(tid, one.id, pipeline.q_c, "Yes", "u-1", now=_dt(2, 15))

    def test_per_stage_statistics(self, pipeline, make_job):
        from app.services.stage_config_service import update_stage

        update_stage(pipeline.tenant_id, pipeline.c, {"max_duration_hours": 24})
        self._history(pipeline, make_job)

        report = tl.stage_duration_report(pipeline.tenant_id)
        by_stage = {row["stage_id"]: row for row in report["stages"]}
        assert [row["stage_id"] for row in report["stages"]] == [
            pipeline.a, pipeline.b, pipeline.c, pipeline.d, pipeline.e,
        ]

        lead = by_stage[pipeline.a]
        assert (lead["transitions_out"], lead["measured_stays"], lead["avg_duration_hours"]) == (2, 0, None)

        survey = by_stage[pipeline.b]
        assert survey["measured_stays"] == 2
        assert survey["avg_duration_hours"] == 3.0
        assert survey["median_duration_hours"] == 3.0
        assert survey["over_max"] == 0

        build = by_stage[pipeline.c]
        assert build["avg_duration_hours"] == 25.0
        assert (build["max_duration_hours"], build["over_max"]) == (24, 1)

        assert by_stage[pipeline.e]["transitions_out"] == 0

    def test_date_window(self, pipeline, make_job):
        self._history(pipeline, make_job)
        report = tl.stage_duration_report(pipeline.tenant_id, date_to=_dt(1, 13))
        survey = next(row for row in report["stages"] if row["stage_id"] == pipeline.b)
        assert (survey["transitions_out"], survey["avg_duration_hours"]) == (1, 2.0)

    def test_endpoint(self, client, pipeline, make_job):
        self._history(pipeline, make_job)
        res = client.get(f"/api/v1/stage-performance?tenant_id={pipeline.tenant_id}")
        assert res.status_code == 200
        assert len(res.get_json()["stages"]) == 5

        res = client.get(f"/api/v1/stage-performance?tenant_id={pipeline.tenant_id}&from=soon")
        assert res.status_code == 400

"""
Stage colour & name attribution for timeline segments.

An ordered chain of resolver functions; the first one returning a
``(name, color)`` pair wins. Each resolver gets a :class:`SegmentRef`
(what the audit row recorded) and a :class:`ColorContext` (the tenant's
stage graph plus the job's live current stage).
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

NEUTRAL_COLOR = "#6B7280"

STATUS_COLORS = {
    "planning": "#3B82F6",
    "active": "#10B981",
    "on_hold": "#F59E0B",
    "completed": "#6B7280",
    "cancelled": "#EF4444",
}


@dataclass(frozen=True)
class SegmentRef:
    """Stage reference as snapshotted in the audit trail."""

    stage_id: int | None
    name: str | None = None
    status: str | None = None
    is_current: bool = False


@dataclass(frozen=True)
class ColorContext:
    graph: object
    current_stage: object = None  # StageInfo of the job's live stage, if any


def from_live_stage(ref: SegmentRef, ctx: ColorContext):
    stage = ctx.current_stage
    if ref.is_current and stage is not None and (ref.stage_id is None or ref.stage_id == stage.id):
        return stage.name, stage.color
    return None


def from_graph_by_id(ref: SegmentRef, ctx: ColorContext):
    stage = ctx.graph.stage(ref.stage_id) if ctx.graph is not None else None
    if stage is not None:
        return stage.name, stage.color
    return None


def from_graph_by_name(ref: SegmentRef, ctx: ColorContext):
    if ctx.graph is None or not ref.name:
        return None
    stage = ctx.graph.stage_by_name(ref.name)
    if stage is not None:
        return ref.name, stage.color
    return None


def from_status(ref: SegmentRef, ctx: ColorContext):
    color = STATUS_COLORS.get(ref.status or "")
    if color is not None:
        return ref.name or ref.status.replace("_", " ").title(), color
    return None


def neutral(ref: SegmentRef, ctx: ColorContext):
    return ref.name or "Unknown stage", NEUTRAL_COLOR


RESOLVERS = [from_live_stage, from_graph_by_id, from_graph_by_name, from_status, neutral]


def resolve_color(ref: SegmentRef, ctx: ColorContext, resolvers=None) -> tuple[str, str]:
    """Return ``(stage_name, color)`` for a segment."""
    for resolver in resolvers or RESOLVERS:
        found = resolver(ref, ctx)
        if found is not None:
            return found
    return neutral(ref, ctx)

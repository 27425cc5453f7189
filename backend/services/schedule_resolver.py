"""Schedule Phase Resolver - finds the next scheduled plan change, if any.

A subscription schedule carries ordered phases. The phase that starts at or
after the current phase's end is the pending change; when none qualifies the
last phase is used. A phase only counts as a pending change when its
(plan, cycle) differs from the subscription's current one.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from models import PendingChange
from services.plan_resolution import PlanHint, PHASE_PLAN_STRATEGIES, resolve_plan
from services.price_catalog import PriceCatalog
from utils.timestamps import to_datetime, utc_now
import logging

logger = logging.getLogger(__name__)


def current_phase_end(
    schedule: Optional[Dict[str, Any]],
    current_period_end: Any = None,
) -> datetime:
    """Marker separating the running phase from upcoming ones.

    schedule.current_phase.end_date, else the subscription period end, else now.
    """
    if isinstance(schedule, dict):
        current_phase = schedule.get("current_phase")
        if isinstance(current_phase, dict):
            end = to_datetime(current_phase.get("end_date"))
            if end is not None:
                return end
    return to_datetime(current_period_end) or utc_now()


def resolve_pending_change(
    schedule: Optional[Dict[str, Any]],
    marker: Any,
    current_plan: PlanHint,
    catalog: PriceCatalog,
) -> Optional[PendingChange]:
    if not isinstance(schedule, dict):
        return None
    phases = [p for p in (schedule.get("phases") or []) if isinstance(p, dict)]
    if not phases:
        return None

    marker_at = to_datetime(marker) or utc_now()
    upcoming = []
    for phase in phases:
        start = to_datetime(phase.get("start_date"))
        if start is not None and start >= marker_at:
            upcoming.append((start, phase))

    if upcoming:
        start, phase = min(upcoming, key=lambda pair: pair[0])
    else:
        phase = phases[-1]
        start = to_datetime(phase.get("start_date"))

    phase_plan, phase_cycle = resolve_plan(phase, catalog, PHASE_PLAN_STRATEGIES)
    if phase_plan is None and phase_cycle is None:
        logger.info("Schedule %s: next phase has no resolvable plan", schedule.get("id"))
        return None

    current_slug, current_cycle = current_plan
    target_slug = phase_plan or current_slug
    target_cycle = phase_cycle or current_cycle
    if (target_slug, target_cycle) == (current_slug, current_cycle):
        return None

    effective = max(start, marker_at) if start is not None else marker_at
    return PendingChange(
        plan_slug=target_slug,
        billing_cycle=target_cycle,
        effective_date=effective,
        schedule_id=schedule.get("id"),
    )

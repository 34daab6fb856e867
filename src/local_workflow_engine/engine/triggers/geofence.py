"""Keep the OS geofence registration in sync with enabled workflows."""

from __future__ import annotations

import logging
import threading

from local_workflow_engine.engine.workflow.models import (
    GeofenceTransition,
    GeofenceTrigger,
    Workflow,
)
from local_workflow_engine.integrations.base import GeofencePlatform, GeofenceRegion

logger = logging.getLogger(__name__)


def geofence_id_for(workflow_id: str, user_id: str, location_name: str) -> str:
    """Build a stable, unique geofence id for a new trigger."""

    slug = "_".join(location_name.lower().split()) or "location"
    return f"{workflow_id}_{user_id}_{slug}"


def build_regions(workflows: list[Workflow]) -> list[GeofenceRegion]:
    """One region per geofence id across enabled workflows."""

    masks: dict[str, set[str]] = {}
    first: dict[str, GeofenceTrigger] = {}
    for workflow in workflows:
        if not workflow.is_enabled:
            continue
        for trigger in workflow.geofence_triggers():
            masks.setdefault(trigger.geofence_id, set()).add(trigger.transition.value)
            first.setdefault(trigger.geofence_id, trigger)

    regions: list[GeofenceRegion] = []
    for geofence_id in sorted(first):
        trigger = first[geofence_id]
        regions.append(
            GeofenceRegion(
                id=geofence_id,
                latitude=trigger.latitude,
                longitude=trigger.longitude,
                radius_meters=trigger.radius_meters,
                transition_mask=frozenset(masks[geofence_id]),
                loitering_delay_minutes=trigger.loitering_delay_minutes,
            )
        )
    return regions


def matching_triggers(
    workflows: list[Workflow], geofence_id: str, transition: GeofenceTransition
) -> list[tuple[Workflow, GeofenceTrigger]]:
    return [
        (workflow, trigger)
        for workflow in workflows
        if workflow.is_enabled
        for trigger in workflow.geofence_triggers()
        if trigger.geofence_id == geofence_id and trigger.transition == transition
    ]


class GeofenceRegistrar:
    """Replaces the platform's registered set whenever the workflow set changes."""

    def __init__(self, platform: GeofencePlatform | None) -> None:
        self.platform = platform
        self._lock = threading.Lock()
        self.registered: list[GeofenceRegion] = []

    def refresh(self, workflows: list[Workflow]) -> list[GeofenceRegion]:
        regions = build_regions(workflows)
        with self._lock:
            if self.platform is not None and regions != self.registered:
                self.platform.register_regions(regions)
                logger.info("Geofences registered", extra={"count": len(regions)})
            self.registered = regions
        return regions

"""Processed-event records that gate email and chat triggers.

A record exists once per ``(event_id, workflow_id)`` pair. The evaluator checks
``is_processed`` before dispatching and calls ``mark_processed`` right after the
dispatch attempt, so an event fires a given workflow at most once no matter how
many polling cycles observe it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic import Field

from local_workflow_engine.engine.errors import ConcurrencyError
from local_workflow_engine.engine.storage.json_store import (
    JsonListStore,
    parse_iso,
    utc_iso_now,
    utc_now,
)
from local_workflow_engine.engine.workflow.models import CamelModel

logger = logging.getLogger(__name__)


class ProcessedEvent(CamelModel):
    event_id: str
    workflow_id: str
    user_id: str
    event_from: str = ""
    event_subject: str = ""
    processed_at: str = Field(default_factory=utc_iso_now)
    original_event_timestamp: str | None = None


@dataclass(frozen=True, slots=True)
class DedupStats:
    total: int
    recent: list[ProcessedEvent]


class ProcessedEventStore(JsonListStore[ProcessedEvent]):
    record_type = ProcessedEvent

    def is_processed(self, event_id: str, workflow_id: str) -> bool:
        return (
            self.find(lambda r: r.event_id == event_id and r.workflow_id == workflow_id)
            is not None
        )

    def filter_new(self, event_ids: list[str], workflow_id: str) -> list[str]:
        seen = {r.event_id for r in self.list() if r.workflow_id == workflow_id}
        return [e for e in event_ids if e not in seen]

    def mark_processed(
        self,
        event_id: str,
        workflow_id: str,
        *,
        user_id: str,
        event_from: str = "",
        event_subject: str = "",
        original_event_timestamp: str | None = None,
    ) -> bool:
        """Record the pair; returns False (and writes nothing) if it already exists."""

        with self.transaction() as records:
            for record in records:
                if record.event_id == event_id and record.workflow_id == workflow_id:
                    return False
            records.append(
                ProcessedEvent(
                    event_id=event_id,
                    workflow_id=workflow_id,
                    user_id=user_id,
                    event_from=event_from,
                    event_subject=event_subject,
                    original_event_timestamp=original_event_timestamp,
                )
            )
        logger.debug(
            "Marked event processed", extra={"event_id": event_id, "workflow_id": workflow_id}
        )
        return True

    def try_mark_processed(self, event_id: str, workflow_id: str, *, user_id: str) -> None:
        """Strict variant of :meth:`mark_processed`.

        Raises:
            ConcurrencyError: If another caller already marked the pair.
        """

        if not self.mark_processed(event_id, workflow_id, user_id=user_id):
            raise ConcurrencyError(
                f"Event {event_id} already processed for workflow {workflow_id}"
            )

    def purge_older_than(self, days: int) -> int:
        cutoff = utc_now() - timedelta(days=days)
        removed = self.remove_where(lambda r: parse_iso(r.processed_at) < cutoff)
        if removed:
            logger.info("Purged processed events", extra={"removed": removed, "days": days})
        return removed

    def clear_workflow(self, workflow_id: str) -> int:
        return self.remove_where(lambda r: r.workflow_id == workflow_id)

    def stats(self, user_id: str) -> DedupStats:
        mine = [r for r in self.list() if r.user_id == user_id]
        mine.sort(key=lambda r: r.processed_at, reverse=True)
        return DedupStats(total=len(mine), recent=mine[:10])

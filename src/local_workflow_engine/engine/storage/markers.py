from __future__ import annotations

from pydantic import Field

from local_workflow_engine.engine.storage.json_store import JsonListStore, utc_iso_now
from local_workflow_engine.engine.workflow.models import CamelModel


class TriggerMarker(CamelModel):
    """A named checkpoint: a time trigger's last firing or an adapter's poll position."""

    key: str
    value: str
    updated_at: str = Field(default_factory=utc_iso_now)


def schedule_marker_key(workflow_id: str, trigger_index: int) -> str:
    return f"schedule:{workflow_id}:{trigger_index}"


def email_checkpoint_key(workflow_id: str, trigger_index: int) -> str:
    return f"email:{workflow_id}:{trigger_index}"


def chat_offset_key(adapter_name: str) -> str:
    return f"chat-offset:{adapter_name}"


class MarkerStore(JsonListStore[TriggerMarker]):
    record_type = TriggerMarker

    def get(self, key: str) -> str | None:
        record = self.find(lambda r: r.key == key)
        return record.value if record is not None else None

    def set(self, key: str, value: str) -> None:  # noqa: A003
        with self.transaction() as records:
            for idx, record in enumerate(records):
                if record.key == key:
                    records[idx] = TriggerMarker(key=key, value=value)
                    return
            records.append(TriggerMarker(key=key, value=value))

    def clear_workflow(self, workflow_id: str) -> int:
        return self.remove_where(lambda r: f":{workflow_id}:" in r.key)

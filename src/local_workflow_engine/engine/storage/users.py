from __future__ import annotations

from pydantic import Field

from local_workflow_engine.engine.errors import NotFoundError
from local_workflow_engine.engine.storage.json_store import JsonListStore, utc_iso_now
from local_workflow_engine.engine.workflow.models import CamelModel


class WorkflowUser(CamelModel):
    """Addressing details used by send, broadcast and approval notifications."""

    id: str
    display_name: str = ""
    email: str | None = None
    chat_id: str | None = None
    created_at: str = Field(default_factory=utc_iso_now)


class UserStore(JsonListStore[WorkflowUser]):
    record_type = WorkflowUser

    def get(self, user_id: str) -> WorkflowUser:
        user = self.find(lambda u: u.id == user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def upsert(self, user: WorkflowUser) -> WorkflowUser:
        with self.transaction() as records:
            for idx, existing in enumerate(records):
                if existing.id == user.id:
                    records[idx] = user.model_copy(update={"created_at": existing.created_at})
                    return records[idx]
            records.append(user)
        return user

    def find_by_chat_id(self, chat_id: str) -> WorkflowUser | None:
        return self.find(lambda u: u.chat_id == chat_id)

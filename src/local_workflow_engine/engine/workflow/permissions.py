"""Who may do what with a workflow."""

from __future__ import annotations

from local_workflow_engine.engine.workflow.models import Permission, Workflow

_OWNER_ONLY = frozenset({Permission.DELETE, Permission.SHARE})


def has_permission(workflow: Workflow, user_id: str, permission: Permission) -> bool:
    if user_id == workflow.created_by:
        return True
    if permission in _OWNER_ONLY:
        return False
    if permission == Permission.VIEW and workflow.is_public:
        return True
    if user_id not in workflow.shared_with:
        return False
    if permission == Permission.EDIT and user_id in workflow.permissions.can_modify:
        return True
    return permission.value in workflow.permissions.shared_permissions


def users_with_access(workflow: Workflow) -> list[str]:
    return [workflow.created_by, *(u for u in workflow.shared_with if u != workflow.created_by)]

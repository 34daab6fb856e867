"""Unit tests for workflow permission checks."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from local_workflow_engine.engine.workflow.models import Permission, Workflow
from local_workflow_engine.engine.workflow.permissions import has_permission, users_with_access

ALL = list(Permission)


@pytest.fixture
def shared(make_workflow: Callable[..., Workflow]) -> Workflow:
    return make_workflow(
        shared_with=["bob", "carol"],
        permissions={"sharedPermissions": ["view", "execute"], "canModify": ["carol"]},
    )


@pytest.mark.parametrize("permission", ALL)
def test_owner_has_every_permission(shared: Workflow, permission: Permission) -> None:
    assert has_permission(shared, "alice", permission)


@pytest.mark.parametrize(
    ("user", "permission", "expected"),
    [
        ("bob", Permission.VIEW, True),
        ("bob", Permission.EXECUTE, True),
        ("bob", Permission.EDIT, False),
        ("carol", Permission.EDIT, True),
        ("carol", Permission.DELETE, False),
        ("carol", Permission.SHARE, False),
        ("mallory", Permission.VIEW, False),
        ("mallory", Permission.EXECUTE, False),
    ],
)
def test_shared_users(shared: Workflow, user: str, permission: Permission, expected: bool) -> None:
    assert has_permission(shared, user, permission) is expected


def test_public_grants_view_only(make_workflow: Callable[..., Workflow]) -> None:
    workflow = make_workflow(is_public=True)
    assert has_permission(workflow, "mallory", Permission.VIEW)
    assert not has_permission(workflow, "mallory", Permission.EXECUTE)


def test_shared_permissions_can_be_narrowed(make_workflow: Callable[..., Workflow]) -> None:
    workflow = make_workflow(shared_with=["bob"], permissions={"sharedPermissions": ["view"]})
    assert has_permission(workflow, "bob", Permission.VIEW)
    assert not has_permission(workflow, "bob", Permission.EXECUTE)


def test_users_with_access_lists_owner_first(shared: Workflow) -> None:
    assert users_with_access(shared) == ["alice", "bob", "carol"]

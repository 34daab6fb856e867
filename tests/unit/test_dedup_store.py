"""Unit tests for the processed-event store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from local_workflow_engine.engine.errors import ConcurrencyError
from local_workflow_engine.engine.storage.dedup import ProcessedEventStore


def test_mark_processed_twice_keeps_one_record(tmp_path: Path) -> None:
    store = ProcessedEventStore(tmp_path / "processed_events.json")

    assert store.mark_processed("msg-1", "wf-1", user_id="alice") is True
    assert store.mark_processed("msg-1", "wf-1", user_id="alice") is False

    assert store.is_processed("msg-1", "wf-1")
    assert len(store.list()) == 1


def test_pairs_are_scoped_per_workflow(tmp_path: Path) -> None:
    store = ProcessedEventStore(tmp_path / "processed_events.json")
    store.mark_processed("msg-1", "wf-1", user_id="alice")

    assert not store.is_processed("msg-1", "wf-2")
    assert store.filter_new(["msg-1", "msg-2"], "wf-1") == ["msg-2"]


def test_try_mark_processed_raises_on_duplicate(tmp_path: Path) -> None:
    store = ProcessedEventStore(tmp_path / "processed_events.json")
    store.try_mark_processed("msg-1", "wf-1", user_id="alice")

    with pytest.raises(ConcurrencyError):
        store.try_mark_processed("msg-1", "wf-1", user_id="alice")


def test_records_survive_reopen_in_camel_case(tmp_path: Path) -> None:
    path = tmp_path / "processed_events.json"
    ProcessedEventStore(path).mark_processed(
        "msg-1", "wf-1", user_id="alice", event_from="ann@example.com", event_subject="Hi"
    )

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw[0]["eventId"] == "msg-1"
    assert raw[0]["eventFrom"] == "ann@example.com"
    assert ProcessedEventStore(path).is_processed("msg-1", "wf-1")


def test_clear_workflow_and_stats(tmp_path: Path) -> None:
    store = ProcessedEventStore(tmp_path / "processed_events.json")
    store.mark_processed("a", "wf-1", user_id="alice")
    store.mark_processed("b", "wf-1", user_id="alice")
    store.mark_processed("c", "wf-2", user_id="bob")

    assert store.stats("alice").total == 2
    assert store.clear_workflow("wf-1") == 2
    assert [r.event_id for r in store.list()] == ["c"]


def test_purge_keeps_recent_records(tmp_path: Path) -> None:
    store = ProcessedEventStore(tmp_path / "processed_events.json")
    store.mark_processed("a", "wf-1", user_id="alice")

    assert store.purge_older_than(30) == 0
    assert store.is_processed("a", "wf-1")


def test_corrupt_file_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "processed_events.json"
    path.write_text("{not json", encoding="utf-8")

    store = ProcessedEventStore(path)
    assert store.list() == []
    store.mark_processed("a", "wf-1", user_id="alice")
    assert store.is_processed("a", "wf-1")

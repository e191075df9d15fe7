from __future__ import annotations

import pytest

from conftest import skeleton
from taskplan.memory.sessions import (
    ClarificationSession,
    InMemorySessionBackend,
    SessionStore,
    build_clarification_context,
    parse_selection_index,
)
from taskplan.planning.resolver import resolve_skeleton
from taskplan.planning.skeleton import parse_skeleton


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _clarification(store: SessionStore, snapshot, raw) -> str:
    parsed = parse_skeleton(raw)
    error = resolve_skeleton(parsed, snapshot)
    return store.create_clarification_session(parsed, snapshot, "original", error)


def test_sessions_expire_after_ttl(report_snapshot) -> None:
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    session_id = _clarification(store, report_snapshot, skeleton("DeleteTask", targetHint="Report"))

    session = store.get_clarification_session(session_id)
    assert session is not None
    assert session.type == "clarification"
    assert store.active_session_count() == 1

    clock.now += 61

    assert store.get_clarification_session(session_id) is None
    assert store.active_session_count() == 0


def test_create_sweeps_expired_sessions(report_snapshot) -> None:
    clock = FakeClock()
    backend = InMemorySessionBackend()
    store = SessionStore(ttl_seconds=10, confirm_backend=backend, clock=clock)
    stale = store.create_confirm_session(object(), "first", report_snapshot, None)

    clock.now += 11
    fresh = store.create_confirm_session(object(), "second", report_snapshot, None)

    assert backend.get(stale) is None
    assert store.get_confirm_session(fresh).original_instruction == "second"
    assert store.get_confirm_session(fresh).type == "confirm"


def test_delete_and_clear(report_snapshot) -> None:
    store = SessionStore()
    confirm_id = store.create_confirm_session(object(), "x", report_snapshot, None)
    clarification_id = _clarification(store, report_snapshot, skeleton("DeleteTask", targetHint="Report"))

    store.delete_confirm_session(confirm_id)
    assert store.get_confirm_session(confirm_id) is None
    assert store.get_clarification_session(clarification_id) is not None

    store.clear()
    assert store.get_clarification_session(clarification_id) is None


def test_from_config_reads_ttl() -> None:
    assert SessionStore.from_config({"sessions": {"ttl_seconds": 30}}).ttl_seconds == 30.0
    assert SessionStore.from_config({}).ttl_seconds == 300.0
    with pytest.raises(ValueError):
        SessionStore.from_config({"sessions": {"ttl_seconds": 0}})
    with pytest.raises(ValueError):
        SessionStore.from_config({"sessions": []})


@pytest.mark.parametrize(
    ("response", "expected"),
    [("2", 1), ("#3", 2), ("1.", 0), ("the second one", 1), ("First", 0), ("4th please", 3), ("Report", None)],
)
def test_parse_selection_index(response, expected) -> None:
    assert parse_selection_index(response) == expected


def _session(report_snapshot, raw) -> ClarificationSession:
    store = SessionStore()
    session_id = _clarification(store, report_snapshot, raw)
    return store.get_clarification_session(session_id)


def test_clarification_by_number_and_title(report_snapshot) -> None:
    session = _session(report_snapshot, skeleton("DeleteTask", targetHint="Report"))

    assert build_clarification_context(session, "2") == 'Delete task "Report B"'
    assert build_clarification_context(session, "the first") == 'Delete task "Report A"'
    assert build_clarification_context(session, "report b") == 'Delete task "Report B"'


def test_clarification_out_of_range_falls_back_to_text(report_snapshot) -> None:
    session = _session(report_snapshot, skeleton("DeleteTask", targetHint="Report"))

    assert build_clarification_context(session, "7") == 'Delete task "7"'


def test_clarification_rewrites_status_and_update(report_snapshot) -> None:
    status = _session(report_snapshot, skeleton("ChangeStatus", targetHint="Report", toStatus="done"))
    update = _session(
        report_snapshot,
        skeleton("UpdateTask", targetHint="Dentist", changes={"priority": "high", "tags": ["health"]}),
    )

    assert build_clarification_context(status, "1") == 'Change status of task "Report A" to done'
    assert (
        build_clarification_context(update, "Call the dentist")
        == 'Update task "Call the dentist" with changes: priority="high", tags=["health"]'
    )

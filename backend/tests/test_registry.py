"""Tests for registry.py -- the concurrent-safe session registry."""

import threading

import pytest

from conftest import make_active_record
from errors import SessionConflictError
from registry import SessionRecord, SessionRegistry, SessionState

SID = "sess_" + "a" * 32


def _placeholder(session_id: str = SID) -> SessionRecord:
    return SessionRecord(session_id=session_id, created_at=100.0, expires_at=3700.0)


# =========================================================================
# Records
# =========================================================================


class TestSessionRecord:
    def test_defaults_to_provisioning(self) -> None:
        record = _placeholder()
        assert record.state == SessionState.PROVISIONING
        assert record.backend_handle is None
        assert record.endpoints == {}
        assert record.ttl_seconds == 3600.0

    def test_expiry_is_inclusive(self) -> None:
        record = _placeholder()
        assert not record.is_expired(3699.9)
        assert record.is_expired(3700.0)


# =========================================================================
# Registry operations
# =========================================================================


class TestSessionRegistry:
    def test_put_and_get(self) -> None:
        registry = SessionRegistry()
        registry.put(_placeholder())

        assert registry.get(SID) == _placeholder()
        assert SID in registry
        assert len(registry) == 1

    def test_put_rejects_live_id(self) -> None:
        registry = SessionRegistry()
        registry.put(_placeholder())

        with pytest.raises(SessionConflictError):
            registry.put(_placeholder())

    def test_put_rejects_retired_id(self) -> None:
        registry = SessionRegistry()
        registry.put(_placeholder())
        registry.remove(SID)

        with pytest.raises(SessionConflictError, match="retired"):
            registry.put(_placeholder())

    def test_remove_is_idempotent(self) -> None:
        registry = SessionRegistry()
        registry.put(_placeholder())

        assert registry.remove(SID) is True
        assert registry.remove(SID) is False
        assert registry.get(SID) is None
        assert registry.is_retired(SID)

    def test_transition_swaps_record(self) -> None:
        registry = SessionRegistry()
        registry.put(_placeholder())
        original = registry.get(SID)

        updated = registry.transition(
            SID,
            {SessionState.PROVISIONING},
            SessionState.ACTIVE,
            backend_handle="container_1",
        )

        assert updated is not None
        assert updated.state == SessionState.ACTIVE
        assert updated.backend_handle == "container_1"
        assert registry.get(SID) is updated
        # Old record objects are never mutated.
        assert original is not None and original.state == SessionState.PROVISIONING

    def test_transition_from_unexpected_state_fails(self) -> None:
        registry = SessionRegistry()
        registry.put(make_active_record(SID))

        assert registry.transition(
            SID, {SessionState.PROVISIONING}, SessionState.ACTIVE
        ) is None
        assert registry.get(SID).state == SessionState.ACTIVE

    def test_transition_missing_record(self) -> None:
        registry = SessionRegistry()
        assert registry.transition(
            SID, {SessionState.ACTIVE}, SessionState.TERMINATING
        ) is None

    def test_snapshot_is_a_copy(self) -> None:
        registry = SessionRegistry()
        registry.put(make_active_record("sess_" + "1" * 32))
        registry.put(make_active_record("sess_" + "2" * 32))

        snapshot = registry.snapshot()
        registry.remove("sess_" + "1" * 32)

        assert len(snapshot) == 2
        assert len(registry) == 1

    def test_only_one_thread_wins_transition(self) -> None:
        registry = SessionRegistry()
        registry.put(make_active_record(SID))
        winners: list[SessionRecord] = []
        barrier = threading.Barrier(8)

        def contend() -> None:
            barrier.wait()
            result = registry.transition(
                SID, {SessionState.ACTIVE}, SessionState.TERMINATING
            )
            if result is not None:
                winners.append(result)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert registry.get(SID).state == SessionState.TERMINATING

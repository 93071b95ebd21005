"""Concurrent-safe session registry.

The registry is the single source of truth for which backend serves which
session and when it expires. It holds no I/O: every method takes the lock
only for the duration of the dictionary access, so callers may use it from
request handlers, timers and executor threads alike.

Records are immutable. A state change swaps in a new record with
``dataclasses.replace`` under the lock, which means a reader never observes a
half-updated record.
"""

import threading
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

import structlog

from errors import SessionConflictError
from sandbox.provisioner import Endpoint

logger = structlog.get_logger(__name__)


class SessionState(StrEnum):
    """Session lifecycle state."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    TERMINATING = "terminating"
    GONE = "gone"


@dataclass(frozen=True)
class SessionRecord:
    """One live backend bound to a session.

    Attributes:
        session_id: Opaque unique token exposed in the cookie and proxy paths.
        created_at: Unix timestamp when the session was created.
        expires_at: created_at + TTL, fixed for the lifetime of the record.
        state: Current lifecycle state.
        backend_handle: Provisioner handle, None until the backend exists.
        endpoints: Endpoint name to address, empty until the backend exists.
    """

    session_id: str
    created_at: float
    expires_at: float
    state: SessionState = SessionState.PROVISIONING
    backend_handle: str | None = None
    endpoints: dict[str, Endpoint] = field(default_factory=dict)

    @property
    def ttl_seconds(self) -> float:
        return self.expires_at - self.created_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionRegistry:
    """Thread-safe map from session id to ``SessionRecord``.

    Ids that have been removed are retired and rejected by ``put`` for the
    rest of the process lifetime, so a stale cookie can never be re-bound to
    a different backend.

    The retired set is unbounded: it grows by one id per session for the
    life of the process. At 32 hex characters per id that is a few hundred
    bytes per session, and evicting old entries would reopen the window for
    re-binding a stale cookie. Restarting the process clears it.
    """

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._retired: set[str] = set()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> SessionRecord | None:
        """Return the record for ``session_id`` or None if absent."""
        with self._lock:
            return self._records.get(session_id)

    def put(self, record: SessionRecord) -> None:
        """Insert a new record.

        Raises:
            SessionConflictError: If the id is live or has been retired.
        """
        with self._lock:
            if record.session_id in self._records:
                raise SessionConflictError(
                    f"Session '{record.session_id}' already exists"
                )
            if record.session_id in self._retired:
                raise SessionConflictError(
                    f"Session '{record.session_id}' was retired"
                )
            self._records[record.session_id] = record

    def transition(
        self,
        session_id: str,
        expected: set[SessionState] | frozenset[SessionState],
        new_state: SessionState,
        **changes: Any,
    ) -> SessionRecord | None:
        """Atomically move a record to ``new_state`` if its state is expected.

        Args:
            session_id: The record to update.
            expected: States the record must currently be in.
            new_state: The state to move to.
            **changes: Additional fields to set on the new record.

        Returns:
            The updated record, or None when the record is absent or in a
            state outside ``expected`` (another caller won the race).
        """
        with self._lock:
            current = self._records.get(session_id)
            if current is None or current.state not in expected:
                return None
            updated = replace(current, state=new_state, **changes)
            self._records[session_id] = updated
            return updated

    def remove(self, session_id: str) -> bool:
        """Remove and retire ``session_id``.

        Removing an absent id is not an error.

        Returns:
            True if a record was removed, False if it was already absent.
        """
        with self._lock:
            self._retired.add(session_id)
            return self._records.pop(session_id, None) is not None

    def snapshot(self) -> list[SessionRecord]:
        """Return a point-in-time copy of all records."""
        with self._lock:
            return list(self._records.values())

    def is_retired(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._retired

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._records

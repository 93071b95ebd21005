"""Session manager for per-user sandbox backends.

This module provides the SessionManager class, the only component allowed to
create or destroy backends. It coordinates between:
- SessionRegistry: the authoritative map of session id to backend record
- Provisioner: the capability that starts and stops backends
- Two independent expiry triggers: a per-session deadline task and a
  periodic sweep, both converging on one idempotent ``teardown``

Usage:
    >>> from sandbox import DockerProvisioner
    >>> from session_manager import SessionManager
    >>>
    >>> session_manager = SessionManager(DockerProvisioner())
    >>> record = await session_manager.ensure_session(None)
    >>> record.endpoints["primary"].address
    '127.0.0.1:41000'
    >>>
    >>> # Later, from a request handler
    >>> session_manager.lookup(record.session_id)
    >>>
    >>> # Shutdown
    >>> await session_manager.cleanup_all()
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable

import structlog

from config import settings
from errors import ProvisionFailedError, SessionConflictError, SessionNotReadyError
from metrics import MetricsCollector
from registry import SessionRecord, SessionRegistry, SessionState
from sandbox.provisioner import BackendSpec, Provisioner

logger = structlog.get_logger()

_TEARDOWN_FROM = frozenset({SessionState.PROVISIONING, SessionState.ACTIVE})


class SessionManager:
    """Manages the lifecycle of sandbox sessions.

    The SessionManager is the sole writer of the session registry. It handles:
    - Session creation with a provisioning placeholder
    - Reuse of live sessions (no TTL renewal)
    - Absolute-deadline expiry per session
    - A periodic sweep as a backstop
    - Exactly-once teardown via compare-and-set on the record state

    Concurrency:
        Registry access is synchronous and never spans an await, so no lock
        is ever held across provisioner I/O. A second caller asking for a
        session that is still provisioning waits on that session's ready
        event instead of provisioning again.

    Attributes:
        provisioner: Capability used to allocate and terminate backends.
        registry: The session registry.
        metrics_collector: Counters surfaced on the debug route.
        ttl_seconds: Fixed lifetime of every session.
        provision_timeout: Wait limit for a session that is still provisioning.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        registry: SessionRegistry | None = None,
        metrics_collector: MetricsCollector | None = None,
        *,
        ttl_seconds: float | None = None,
        provision_timeout: float | None = None,
        spec_factory: Callable[[str], BackendSpec] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the SessionManager.

        Args:
            provisioner: Provisioner for backend allocation and termination.
            registry: Optional registry (a fresh one by default).
            metrics_collector: Optional collector for lifecycle counters.
            ttl_seconds: Session lifetime (default: settings.session_ttl_seconds).
            provision_timeout: Wait limit for in-flight provisioning
                (default: settings.provision_timeout_seconds).
            spec_factory: Builds the BackendSpec for a session id
                (default: BackendSpec.from_settings).
            clock: Wall-clock source, injectable for tests.
        """
        self.provisioner = provisioner
        self.registry = registry or SessionRegistry()
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
        )
        self.provision_timeout = (
            provision_timeout
            if provision_timeout is not None
            else settings.provision_timeout_seconds
        )
        self._spec_factory = spec_factory or (
            lambda session_id: BackendSpec.from_settings(session_id, settings)
        )
        self._clock = clock
        self._deadline_tasks: dict[str, asyncio.Task[None]] = {}
        self._ready: dict[str, asyncio.Event] = {}
        self._closed: dict[str, asyncio.Event] = {}
        logger.info("session_manager_initialized", ttl_seconds=self.ttl_seconds)

    def _generate_session_id(self) -> str:
        """Generate a unique session identifier.

        Returns:
            A session ID in the format "sess_{32 hex chars}"
        """
        return f"sess_{uuid.uuid4().hex}"

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def ensure_session(self, existing_id: str | None = None) -> SessionRecord:
        """Return a live session, creating a backend when needed.

        Args:
            existing_id: Session id presented by the client, if any.

        Returns:
            The Active SessionRecord serving the client.

        Raises:
            ProvisionFailedError: If a new backend could not be created.
            SessionNotReadyError: If ``existing_id`` is still provisioning
                after the wait limit.
        """
        if existing_id is not None:
            record = self.registry.get(existing_id)
            if record is not None and record.state == SessionState.PROVISIONING:
                record = await self._wait_for_provisioning(existing_id)

            if (
                record is not None
                and record.state == SessionState.ACTIVE
                and not record.is_expired(self._clock())
            ):
                self.metrics_collector.record_session_reused()
                logger.debug("session_reused", session_id=existing_id)
                return record

        return await self._provision_new_session()

    async def _wait_for_provisioning(self, session_id: str) -> SessionRecord | None:
        """Wait for another caller's provisioning of ``session_id`` to finish."""
        ready = self._ready.get(session_id)
        if ready is not None:
            logger.debug("session_waiting_for_provisioning", session_id=session_id)
            try:
                await asyncio.wait_for(ready.wait(), timeout=self.provision_timeout)
            except TimeoutError as e:
                raise SessionNotReadyError(
                    f"Session '{session_id}' is still starting"
                ) from e
        return self.registry.get(session_id)

    def _insert_placeholder(self) -> SessionRecord:
        """Write a Provisioning record under a fresh id.

        A colliding id is regenerated once; a second collision is raised.
        """
        for attempt in range(2):
            session_id = self._generate_session_id()
            now = self._clock()
            record = SessionRecord(
                session_id=session_id,
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self._ready[session_id] = asyncio.Event()
            self._closed[session_id] = asyncio.Event()
            try:
                self.registry.put(record)
                return record
            except SessionConflictError:
                self._ready.pop(session_id, None)
                self._closed.pop(session_id, None)
                logger.warning("session_id_conflict", attempt=attempt + 1)
                if attempt == 1:
                    raise
        raise AssertionError("unreachable")

    async def _provision_new_session(self) -> SessionRecord:
        """Create a placeholder, allocate a backend and mark the session Active."""
        placeholder = self._insert_placeholder()
        session_id = placeholder.session_id
        ready = self._ready[session_id]

        logger.info("create_session_start", session_id=session_id)

        try:
            try:
                allocation = await self.provisioner.allocate(
                    self._spec_factory(session_id)
                )
            except ProvisionFailedError:
                raise
            except Exception as e:
                raise ProvisionFailedError(f"Failed to create backend: {e}") from e

            active = self.registry.transition(
                session_id,
                {SessionState.PROVISIONING},
                SessionState.ACTIVE,
                backend_handle=allocation.handle,
                endpoints=dict(allocation.endpoints),
            )
            if active is None:
                # Torn down (e.g. shutdown) while the backend was starting.
                await self._terminate_backend(session_id, allocation.handle)
                raise ProvisionFailedError(
                    f"Session '{session_id}' was torn down during provisioning"
                )
        except ProvisionFailedError as e:
            self.registry.remove(session_id)
            self._closed.pop(session_id, None)
            self.metrics_collector.record_provision_failure()
            logger.error("session_provision_failed", session_id=session_id, error=str(e))
            raise
        except asyncio.CancelledError:
            self.registry.remove(session_id)
            self._closed.pop(session_id, None)
            logger.warning("session_provision_cancelled", session_id=session_id)
            raise
        finally:
            ready.set()
            self._ready.pop(session_id, None)

        self._schedule_deadline(active)
        self.metrics_collector.record_session_created()
        logger.info(
            "session_created",
            session_id=session_id,
            endpoints={name: ep.address for name, ep in active.endpoints.items()},
            expires_at=active.expires_at,
        )
        return active

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _schedule_deadline(self, record: SessionRecord) -> None:
        """Start the absolute-deadline task for ``record``."""
        session_id = record.session_id
        delay = max(0.0, record.expires_at - self._clock())
        task = asyncio.create_task(
            self._expire_at_deadline(session_id, delay),
            name=f"session_deadline_{session_id}",
        )
        self._deadline_tasks[session_id] = task

        def _remove_task(t: asyncio.Task[None], sid: str = session_id) -> None:
            if self._deadline_tasks.get(sid) is t:
                del self._deadline_tasks[sid]

        task.add_done_callback(_remove_task)

    async def _expire_at_deadline(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("session_deadline_reached", session_id=session_id)
        await self.teardown(session_id, reason="deadline")

    def _cancel_deadline(self, session_id: str) -> None:
        task = self._deadline_tasks.pop(session_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def sweep(self) -> int:
        """Tear down every session whose TTL has elapsed.

        Returns:
            Number of sessions this sweep tore down.
        """
        now = self._clock()
        expired = [
            record
            for record in self.registry.snapshot()
            if record.state in _TEARDOWN_FROM and record.is_expired(now)
        ]
        if not expired:
            return 0

        logger.info("sweep_expired_sessions", count=len(expired))
        results = await asyncio.gather(
            *(self.teardown(record.session_id, reason="sweep") for record in expired)
        )
        return sum(1 for torn_down in results if torn_down)

    async def start_sweep_loop(
        self, interval_seconds: float = 60.0
    ) -> asyncio.Task[None]:
        """Start a background task that periodically sweeps expired sessions.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between sweeps (default: 60).

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """

        async def _loop() -> None:
            logger.info("sweep_loop_started", interval_seconds=interval_seconds)
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.sweep()
                except asyncio.CancelledError:
                    logger.info("sweep_loop_stopped")
                    return
                except Exception as e:
                    logger.error("sweep_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="session_sweep")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self, session_id: str, reason: str = "manual") -> bool:
        """Terminate a session's backend and drop it from the registry.

        Only the caller that moves the record to Terminating performs the
        termination; every other concurrent caller is a no-op. The registry
        entry is removed even when termination fails.

        Args:
            session_id: The session to tear down.
            reason: What triggered the teardown, for logs and metrics.

        Returns:
            True if this call performed the teardown, False otherwise.
        """
        record = self.registry.transition(
            session_id, _TEARDOWN_FROM, SessionState.TERMINATING
        )
        if record is None:
            logger.debug("session_teardown_skipped", session_id=session_id, reason=reason)
            return False

        logger.info("session_teardown_start", session_id=session_id, reason=reason)
        self._cancel_deadline(session_id)
        closed = self._closed.pop(session_id, None)
        if closed is not None:
            closed.set()

        try:
            if record.backend_handle is not None:
                await self._terminate_backend(session_id, record.backend_handle)
        finally:
            self.registry.remove(session_id)
            self.metrics_collector.record_teardown(reason)
            logger.info("session_torn_down", session_id=session_id, reason=reason)
        return True

    async def _terminate_backend(self, session_id: str, handle: str) -> None:
        """Call the provisioner, logging rather than raising on failure."""
        try:
            await self.provisioner.terminate(handle)
        except Exception as e:
            self.metrics_collector.record_termination_failure()
            logger.error(
                "session_terminate_failed",
                session_id=session_id,
                handle=handle[:12],
                error=str(e),
            )

    async def wait_closed(self, session_id: str) -> None:
        """Wait until ``session_id`` starts tearing down.

        Returns immediately when the session is not live.
        """
        closed = self._closed.get(session_id)
        if closed is None:
            record = self.registry.get(session_id)
            if record is None or record.state not in _TEARDOWN_FROM:
                return
            # Records put straight into the registry have no event yet.
            closed = self._closed.setdefault(session_id, asyncio.Event())
        await closed.wait()

    # ------------------------------------------------------------------
    # Read-only access
    # ------------------------------------------------------------------

    def lookup(self, session_id: str) -> SessionRecord | None:
        """Resolve a session id for routing.

        Returns:
            The record if it is Active and unexpired, otherwise None.
        """
        record = self.registry.get(session_id)
        if record is None or record.state != SessionState.ACTIVE:
            return None
        if record.is_expired(self._clock()):
            return None
        return record

    def remaining_seconds(self, record: SessionRecord) -> int:
        """Whole seconds left before ``record`` expires, never negative."""
        elapsed = int(self._clock() - record.created_at)
        return max(0, int(record.ttl_seconds) - elapsed)

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Get the raw registry record for a session in any state."""
        return self.registry.get(session_id)

    def get_all_sessions(self) -> list[SessionRecord]:
        """Get a snapshot of all sessions."""
        return self.registry.snapshot()

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def reap_orphans(self) -> int:
        """Remove backends left behind by a previous process.

        Returns:
            Number of backends removed (0 when reaping fails).
        """
        live_handles = {
            record.backend_handle
            for record in self.registry.snapshot()
            if record.backend_handle is not None
        }
        try:
            removed = await self.provisioner.reap_orphans(live_handles)
        except Exception as e:
            logger.warning("reap_orphans_failed", error=str(e))
            return 0
        logger.info("reap_orphans_complete", removed=removed)
        return removed

    async def cleanup_all(self) -> None:
        """Tear down every session and cancel all deadline tasks.

        This method should be called during application shutdown so no
        backend outlives the process.
        """
        records = self.registry.snapshot()
        logger.info("cleanup_all_start", session_count=len(records))

        tasks = list(self._deadline_tasks.values())
        self._deadline_tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await asyncio.gather(
            *(self.teardown(record.session_id, reason="shutdown") for record in records)
        )
        logger.info("cleanup_all_complete")

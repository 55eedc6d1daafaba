"""
audit/recorder.py -- Fire-and-forget activity recording.

Every write is dispatched as a detached asyncio task that runs the
synchronous store insert in a worker thread (asyncio.to_thread). The request
path only pays for building the entry and scheduling the task:

  - the response is never awaited on the write;
  - cancelling the request does not cancel the task;
  - a failed write is logged here and goes no further.

Tasks are kept in self._pending until they finish. The event loop only holds
weak references to tasks, so an unreferenced write could be garbage-collected
mid-flight.

No ordering is guaranteed between entries written concurrently for the same
user beyond their timestamps.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from audit.models import ActivityLogEntry
from audit.store import ActivityLogStore
from auth.models import Principal

logger = logging.getLogger("pocketledger.audit")


class AuditRecorder:
    def __init__(self, store: ActivityLogStore) -> None:
        self._store = store
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def record(
        self,
        principal: Principal,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Schedule one audit write for `principal`. Returns immediately."""
        entry = ActivityLogEntry(
            user_id=principal.id,
            action=action,
            details=dict(details or {}),
            user_info=principal.snapshot(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._dispatch(entry)

    def observe(
        self,
        envelope: dict | None,
        principal: Principal | None,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record iff the envelope reports success and someone is authenticated.

        Returns True when a write was dispatched.
        """
        if principal is None or not isinstance(envelope, dict):
            return False
        if envelope.get("status") != "success":
            return False
        self.record(principal, action, details, ip_address, user_agent)
        return True

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for outstanding writes (shutdown, tests). Never raises on timeout."""
        if not self._pending:
            return
        _done, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_pending:
            logger.warning("%d audit write(s) still pending after %.1fs", len(still_pending), timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, entry: ActivityLogEntry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from sync code with no loop (CLI, worker thread).
            threading.Thread(target=self._write, args=(entry,), name="audit-writer", daemon=True).start()
            return
        task = loop.create_task(asyncio.to_thread(self._write, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _write(self, entry: ActivityLogEntry) -> None:
        try:
            self._store.insert(entry)
        except Exception:
            logger.exception("Failed to record activity %r for user %s", entry.action, entry.user_id)

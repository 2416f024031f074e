"""Correlation and timeout control for requests in flight on one slot."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from structlog import get_logger

from .models import Outcome, PendingRequest

logger = get_logger(__name__)


def _id_key(request_id: Any) -> str:
    # JSON text keeps "1" and 1 distinct and makes any id hashable
    return json.dumps(request_id, sort_keys=True, default=str)


class CorrelationController:
    """Routes reassembled values to the requests waiting on a slot.

    Each registered request is settled exactly once, by whichever comes
    first: a matching value, its deadline timer, or loss of the process.
    A value carrying a known ``id`` settles the request with that id. Any
    other response settles the oldest waiter, so waiters queue behind each
    other and a new registration never replaces an older one. Waiters that
    sent an id only accept their own id or an id-less answer: a late answer
    to a timed-out request is dropped instead of reaching a later caller.
    Messages initiated by the backend (carrying a ``method``) only reach
    waiters that sent no id.
    """

    def __init__(self, slot: str):
        self.slot = slot
        self._queue: List[PendingRequest] = []
        self._by_id: Dict[str, List[PendingRequest]] = {}

    def __len__(self) -> int:
        return len(self._queue)

    def register(self, request_id: Optional[Any], deadline: float) -> PendingRequest:
        """Register a waiter and arm its timer at ``deadline`` (loop clock)."""
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            slot=self.slot,
            request_id=request_id,
            deadline=deadline,
            future=loop.create_future(),
        )
        pending.timer = loop.call_at(deadline, self._expire, pending)

        self._queue.append(pending)
        if request_id is not None:
            self._by_id.setdefault(_id_key(request_id), []).append(pending)
        return pending

    async def wait(self, pending: PendingRequest) -> Outcome:
        """Wait for the settlement of ``pending``.

        If the caller is cancelled the request is deregistered before the
        cancellation propagates, so nothing outlives it.
        """
        try:
            return await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            self.discard(pending)
            raise

    def dispatch(self, value: Any) -> bool:
        """Route one reassembled value; returns True if a waiter took it."""
        response_id = value.get("id") if isinstance(value, dict) else None
        if response_id is not None:
            candidates = self._by_id.get(_id_key(response_id))
            if candidates:
                return self._settle(candidates[0], Outcome.delivered(value))

        # Requests or notifications initiated by the backend itself
        from_backend = isinstance(value, dict) and "method" in value

        if response_id is None and not from_backend:
            waiter = self._queue[0] if self._queue else None
        else:
            # Requests sent without an id can only be matched by arrival order
            waiter = next((p for p in self._queue if p.request_id is None), None)

        if waiter is not None:
            return self._settle(waiter, Outcome.delivered(value))

        if from_backend:
            logger.debug("Ignoring message from backend", slot=self.slot, method=value.get("method"))
        elif response_id is not None:
            logger.warning(
                "Dropping response with no pending request",
                slot=self.slot,
                response_id=response_id,
            )
        else:
            logger.warning("Dropping unsolicited value from backend", slot=self.slot)
        return False

    def fail_all(self, exit_code: Optional[int] = None) -> int:
        """Settle every waiter with PROCESS_LOST; returns how many were failed."""
        failed = 0
        for pending in list(self._queue):
            if self._settle(pending, Outcome.process_lost(exit_code)):
                failed += 1
        return failed

    def discard(self, pending: PendingRequest) -> None:
        """Deregister a waiter without settling it through a value."""
        if not pending.future.done():
            pending.future.cancel()
        self._release(pending)

    def _expire(self, pending: PendingRequest) -> None:
        self._settle(pending, Outcome.timed_out())

    def _settle(self, pending: PendingRequest, outcome: Outcome) -> bool:
        settled = pending.settle(outcome)
        self._release(pending)
        return settled

    def _release(self, pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

        if pending in self._queue:
            self._queue.remove(pending)

        if pending.request_id is not None:
            key = _id_key(pending.request_id)
            waiters = self._by_id.get(key)
            if waiters and pending in waiters:
                waiters.remove(pending)
                if not waiters:
                    del self._by_id[key]

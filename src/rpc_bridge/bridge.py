"""Bridge facade: one JSON-RPC exchange with a slot's child process."""

import asyncio
from typing import Any, Dict, List, Optional

from structlog import get_logger

from .errors import ProcessLostError, RequestTimeoutError
from .models import BridgeConfig, OutcomeKind, ProcessStats
from .supervisor import ProcessSupervisor, Spawner

logger = get_logger(__name__)


class RpcBridge:
    """Sends requests to slots and relays the single response back.

    ``send`` makes at most one attempt: ensure the slot is running, write
    the framed request, wait for its settlement. Any failure propagates
    unchanged.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        spawner: Optional[Spawner] = None,
    ):
        self.config = config or BridgeConfig()
        self.supervisor = supervisor or ProcessSupervisor(self.config, spawner)

    @property
    def slots(self) -> List[str]:
        return self.supervisor.keys

    async def send(
        self,
        slot_key: str,
        request: Any,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send ``request`` to ``slot_key`` and return the response value.

        Raises:
            UnknownSlotError: No slot is configured under ``slot_key``
            LaunchFailedError: The child process could not be started
            NotRunningError: The child was gone when the request was written
            ProcessLostError: The child exited before responding
            RequestTimeoutError: No response arrived within ``timeout``
        """
        timeout = timeout if timeout is not None else self.config.request_timeout
        slot = self.supervisor.get(slot_key)

        await slot.ensure_running()

        request_id = request.get("id") if isinstance(request, dict) else None

        loop = asyncio.get_running_loop()
        pending = slot.correlation.register(request_id, loop.time() + timeout)
        try:
            await slot.write(request)
        except (Exception, asyncio.CancelledError):
            slot.correlation.discard(pending)
            slot.num_errors += 1
            raise

        outcome = await slot.correlation.wait(pending)

        if outcome.kind == OutcomeKind.DELIVERED:
            return outcome.value

        slot.num_errors += 1
        if outcome.kind == OutcomeKind.TIMED_OUT:
            logger.warning("Request timed out", slot=slot_key, request_id=request_id, timeout=timeout)
            raise RequestTimeoutError(slot_key, timeout)

        logger.warning("Backend lost during request", slot=slot_key, request_id=request_id)
        raise ProcessLostError(slot_key, outcome.exit_code)

    async def ensure_running(self, slot_key: str) -> None:
        await self.supervisor.ensure_running(slot_key)

    def is_running(self, slot_key: str) -> bool:
        return self.supervisor.is_running(slot_key)

    async def start_all(self) -> None:
        await self.supervisor.start_all()

    async def shutdown_all(self) -> None:
        await self.supervisor.shutdown_all()

    def health(self) -> Dict[str, bool]:
        """Liveness of every configured slot."""
        return {key: self.supervisor.is_running(key) for key in self.supervisor.keys}

    def get_stats(self) -> List[ProcessStats]:
        return self.supervisor.get_stats()

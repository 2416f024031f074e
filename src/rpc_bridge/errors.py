"""Error hierarchy for the stdio JSON-RPC bridge.

Every failure the bridge can surface to a caller derives from ``BridgeError``.
None of them are retried internally; the first failure encountered on a
``send`` is raised unchanged and retry policy is left to the caller.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from .models import JsonRpcErrorCode


class BridgeError(Exception):
    """Base exception carrying a JSON-RPC error code and context."""

    error_code: int = JsonRpcErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        slot: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.slot = slot
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "slot": self.slot,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class LaunchFailedError(BridgeError):
    """The child process could not be started."""

    error_code = JsonRpcErrorCode.PROCESS_ERROR


class UnknownSlotError(LaunchFailedError):
    """No launch specification is configured for the slot key."""

    def __init__(self, slot: str) -> None:
        super().__init__(f"Unknown slot '{slot}'", slot=slot)


class NotRunningError(BridgeError):
    """A write was attempted against a slot with no live process."""

    error_code = JsonRpcErrorCode.PROCESS_ERROR

    def __init__(self, slot: str) -> None:
        super().__init__(f"{slot} not running", slot=slot)


class ProcessLostError(BridgeError):
    """The child process terminated while a request was outstanding."""

    error_code = JsonRpcErrorCode.PROCESS_ERROR

    def __init__(self, slot: str, exit_code: Optional[int] = None) -> None:
        super().__init__(
            f"{slot} process exited with code {exit_code} before responding",
            slot=slot,
            context={"exit_code": exit_code},
        )
        self.exit_code = exit_code


class RequestTimeoutError(BridgeError):
    """No parseable response arrived before the deadline."""

    error_code = JsonRpcErrorCode.TIMEOUT_ERROR

    def __init__(self, slot: str, timeout: float) -> None:
        super().__init__(
            f"Request timeout after {timeout}s",
            slot=slot,
            context={"timeout": timeout},
        )
        self.timeout = timeout

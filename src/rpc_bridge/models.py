"""Data models for the stdio JSON-RPC bridge."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

class SlotState(Enum):
    """Lifecycle states of a slot's child process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class OutcomeKind(Enum):
    """How a pending request was settled."""

    DELIVERED = "delivered"
    TIMED_OUT = "timed_out"
    PROCESS_LOST = "process_lost"


@dataclass(frozen=True)
class Outcome:
    """Tagged settlement of a single pending request."""

    kind: OutcomeKind
    value: Any = None
    exit_code: Optional[int] = None

    @classmethod
    def delivered(cls, value: Any) -> "Outcome":
        return cls(OutcomeKind.DELIVERED, value=value)

    @classmethod
    def timed_out(cls) -> "Outcome":
        return cls(OutcomeKind.TIMED_OUT)

    @classmethod
    def process_lost(cls, exit_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.PROCESS_LOST, exit_code=exit_code)


class SlotSpec(BaseModel):
    """How to launch the child process behind a slot."""

    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    display_name: Optional[str] = None


@dataclass(eq=False)
class PendingRequest:
    """One in-flight request awaiting exactly one settlement."""

    slot: str
    request_id: Optional[Any]
    deadline: float  # event loop clock
    future: "asyncio.Future[Outcome]"
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def settled(self) -> bool:
        return self.future.done()

    def settle(self, outcome: Outcome) -> bool:
        """Resolve the request; returns False if it was already settled."""
        if self.future.done():
            return False
        self.future.set_result(outcome)
        return True


class JsonRpcErrorCode:
    """Standard JSON-RPC 2.0 and bridge-specific error codes."""

    # JSON-RPC 2.0 standard errors
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Bridge-specific errors
    PROCESS_ERROR = -32001
    TIMEOUT_ERROR = -32003


@dataclass
class BridgeConfig:
    """Runtime configuration consumed by the bridge core."""

    slots: Dict[str, SlotSpec] = field(default_factory=dict)

    # Requests
    request_timeout: float = 30.0  # seconds
    max_buffer_bytes: int = 10 * 1024 * 1024

    # Process management
    shutdown_timeout: float = 5.0  # seconds
    autostart: bool = True

    # Logging
    log_requests: bool = False
    log_responses: bool = False


@dataclass
class ProcessStats:
    """Statistics for one slot's child process."""

    slot: str
    state: str
    process_id: Optional[int] = None
    last_exit_code: Optional[int] = None
    launches: int = 0
    num_requests: int = 0
    num_errors: int = 0
    pending_requests: int = 0
    uptime_seconds: float = 0.0
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    last_request: Optional[datetime] = None

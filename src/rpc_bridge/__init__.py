"""Stdio JSON-RPC bridge.

This module relays JSON-RPC requests from HTTP clients to long-lived child
processes that speak line-delimited JSON over stdin/stdout, one process per
configured slot.
"""

__version__ = "0.1.0"

from .bridge import RpcBridge
from .correlation import CorrelationController
from .errors import (
    BridgeError,
    LaunchFailedError,
    NotRunningError,
    ProcessLostError,
    RequestTimeoutError,
    UnknownSlotError,
)
from .framing import StreamReassembler, encode_frame
from .models import BridgeConfig, SlotSpec
from .server import BridgeServer, create_bridge_app
from .supervisor import ProcessSupervisor, SlotProcess

__all__ = [
    "RpcBridge",
    "BridgeServer",
    "create_bridge_app",
    "ProcessSupervisor",
    "SlotProcess",
    "CorrelationController",
    "StreamReassembler",
    "encode_frame",
    "BridgeConfig",
    "SlotSpec",
    "BridgeError",
    "LaunchFailedError",
    "UnknownSlotError",
    "NotRunningError",
    "ProcessLostError",
    "RequestTimeoutError",
]

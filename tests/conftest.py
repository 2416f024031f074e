"""Shared fixtures for the bridge tests."""

import sys
from pathlib import Path
from typing import Callable

import pytest

from src.rpc_bridge.models import BridgeConfig, SlotSpec

FAKE_BACKEND = Path(__file__).parent / "fixtures" / "fake_backend.py"


def backend_spec(mode: str = "echo", **kwargs) -> SlotSpec:
    """Launch specification for the fake backend in the given mode."""
    return SlotSpec(command=sys.executable, args=["-u", str(FAKE_BACKEND), mode], **kwargs)


@pytest.fixture
def make_config() -> Callable[..., BridgeConfig]:
    """Build a BridgeConfig with short timeouts from slot-key/mode pairs."""

    def _make(request_timeout: float = 5.0, **modes: str) -> BridgeConfig:
        return BridgeConfig(
            slots={key: backend_spec(mode) for key, mode in modes.items()},
            request_timeout=request_timeout,
            shutdown_timeout=2.0,
            autostart=False,
        )

    return _make


@pytest.fixture
def fake_backend() -> Callable[..., SlotSpec]:
    """Factory for fake backend launch specifications."""
    return backend_spec

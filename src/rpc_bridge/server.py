"""HTTP front end relaying JSON-RPC calls to stdio backends."""

import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from structlog import get_logger

from . import __version__
from .bridge import RpcBridge
from .config import BridgeSettings, get_settings
from .errors import BridgeError, RequestTimeoutError, UnknownSlotError
from .models import BridgeConfig, JsonRpcErrorCode

logger = get_logger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"


class RpcCallBody(BaseModel):
    """Body of the per-method convenience routes."""

    id: Union[str, int, None] = None
    params: Optional[Any] = None


def jsonrpc_error(
    request_id: Any,
    code: int,
    message: str,
    data: Optional[Any] = None,
) -> Dict[str, Any]:
    """Build a JSON-RPC 2.0 error envelope."""
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def error_status(exc: Exception) -> int:
    """HTTP status used when relaying a bridge failure."""
    if isinstance(exc, UnknownSlotError):
        return 404
    if isinstance(exc, RequestTimeoutError):
        return 504
    if isinstance(exc, BridgeError):
        return 502
    return 500


class BridgeServer:
    """FastAPI application wrapping an RpcBridge."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        bridge: Optional[RpcBridge] = None,
        settings: Optional[BridgeSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.config = config or self.settings.to_bridge_config()
        self.bridge = bridge or RpcBridge(self.config)
        self.session_id: Optional[str] = None
        self._start_time = datetime.now()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            """Manage application lifecycle."""
            await self.startup()
            yield
            await self.shutdown()

        app = FastAPI(
            title="RPC stdio bridge",
            description="HTTP gateway for line-delimited JSON-RPC child processes",
            version=__version__,
            lifespan=lifespan,
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_credentials=self.settings.cors_credentials,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._register_routes(app)

        return app

    async def relay(self, slot: str, request: Dict[str, Any]) -> JSONResponse:
        """Send one request and turn the outcome into an HTTP response."""
        request_id = request.get("id")
        try:
            response = await self.bridge.send(slot, request)
            return JSONResponse(content=response)
        except Exception as e:
            logger.error(
                "Bridge request failed",
                slot=slot,
                method=request.get("method"),
                error=str(e),
            )
            code = e.error_code if isinstance(e, BridgeError) else JsonRpcErrorCode.INTERNAL_ERROR
            message = e.message if isinstance(e, BridgeError) else str(e)
            return JSONResponse(
                content=jsonrpc_error(request_id, code, message),
                status_code=error_status(e),
            )

    def _register_routes(self, app: FastAPI) -> None:
        """Register API routes."""

        @app.post("/mcp/{slot}/initialize")
        async def initialize(slot: str, body: Optional[RpcCallBody] = None):
            """Start the slot if needed and perform the initialize handshake."""
            body = body or RpcCallBody()
            params = body.params
            if params is None:
                params = {
                    "protocolVersion": DEFAULT_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {
                        "name": "rpc-stdio-bridge",
                        "version": __version__,
                    },
                }

            response = await self.relay(
                slot,
                {
                    "jsonrpc": "2.0",
                    "id": body.id if body.id is not None else "init-1",
                    "method": "initialize",
                    "params": params,
                },
            )
            if response.status_code == 200:
                self.session_id = f"session-{int(time.time() * 1000)}"
            return response

        @app.post("/mcp/{slot}/tools/list")
        async def list_tools(slot: str, body: Optional[RpcCallBody] = None):
            """List the tools a backend exposes."""
            body = body or RpcCallBody()
            return await self.relay(
                slot,
                {
                    "jsonrpc": "2.0",
                    "id": body.id if body.id is not None else "list-tools-1",
                    "method": "tools/list",
                    "params": body.params if body.params is not None else {},
                },
            )

        @app.post("/mcp/{slot}/tools/call")
        async def call_tool(slot: str, body: Optional[RpcCallBody] = None):
            """Call a tool on a backend."""
            body = body or RpcCallBody()
            request: Dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": body.id if body.id is not None else "call-tool-1",
                "method": "tools/call",
            }
            if body.params is not None:
                request["params"] = body.params
            return await self.relay(slot, request)

        @app.post("/mcp/{slot}/rpc")
        async def raw_rpc(slot: str, request: Request):
            """Relay an arbitrary JSON-RPC request object verbatim."""
            try:
                payload = await request.json()
            except ValueError:
                return JSONResponse(
                    content=jsonrpc_error(None, JsonRpcErrorCode.PARSE_ERROR, "Parse error"),
                    status_code=400,
                )

            if not isinstance(payload, dict):
                return JSONResponse(
                    content=jsonrpc_error(
                        None,
                        JsonRpcErrorCode.INVALID_REQUEST,
                        "Invalid Request: expected a JSON object",
                    ),
                    status_code=400,
                )

            return await self.relay(slot, payload)

        @app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "status": "ok",
                "slots": self.bridge.health(),
                "session_id": self.session_id,
                "uptime": (datetime.now() - self._start_time).total_seconds(),
            }

        @app.get("/stats")
        async def get_stats():
            """Get per-slot process statistics."""
            return {
                "uptime_seconds": (datetime.now() - self._start_time).total_seconds(),
                "slots": [asdict(stats) for stats in self.bridge.get_stats()],
            }

    async def startup(self) -> None:
        """Start the configured backends."""
        logger.info("Starting RPC bridge", slots=self.bridge.slots)
        if self.config.autostart:
            await self.bridge.start_all()

    async def shutdown(self) -> None:
        """Stop every backend so no child process outlives the gateway."""
        logger.info("Shutting down RPC bridge")
        await self.bridge.shutdown_all()


def create_bridge_app(
    config: Optional[BridgeConfig] = None,
    settings: Optional[BridgeSettings] = None,
) -> FastAPI:
    """Create a configured bridge server application."""
    server = BridgeServer(config, settings=settings)
    return server.app

"""Fast-start entry point for an execution unit.

The orchestrator probes the unit's port on a short deadline, so the
listener must be bound before anything expensive is imported. This module
therefore imports only the standard library and uvicorn. uvicorn serves
``BootstrapApp``, which answers 503 with ``Retry-After: 1`` until a
background task has imported and built the real application, then hands
every request to it.

States are one-way: INITIALIZING -> READY. If initialization fails the
error is logged and the server is asked to exit with a non-zero status.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import os
import sys
import time
from collections.abc import Awaitable, Callable, MutableMapping
from enum import Enum
from typing import Any

import uvicorn

logger = logging.getLogger(__name__)

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

DEFAULT_FACTORY = "agent_gateway.unit.server:create_unit_app_from_env"

_INITIALIZING_BODY = json.dumps({
    "status": "initializing",
    "message": "Execution unit is starting up, please retry in 1 second",
}).encode()


class BootstrapState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def _load_factory(target: str) -> Callable[[], ASGIApp]:
    module_name, _, attr = target.partition(":")
    if not attr:
        raise ValueError(f"factory must be given as 'module:attribute', got {target!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class BootstrapApp:
    """ASGI app that serves 503 until the real handler has been loaded."""

    def __init__(
        self,
        factory: str = DEFAULT_FACTORY,
        on_failure: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._factory = factory
        self._on_failure = on_failure
        self._handler: ASGIApp | None = None
        self._task: asyncio.Task[None] | None = None
        self._started_at = time.monotonic()
        self.state = BootstrapState.INITIALIZING
        self.error: BaseException | None = None

    @property
    def ready(self) -> bool:
        return self.state == BootstrapState.READY

    def start(self) -> asyncio.Task[None]:
        """Schedule initialization on the running loop; idempotent."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._initialize())
        return self._task

    async def _initialize(self) -> None:
        try:
            factory = await asyncio.to_thread(_load_factory, self._factory)
            handler = await asyncio.to_thread(factory)
        except Exception as e:
            self.state = BootstrapState.FAILED
            self.error = e
            logger.exception("Execution unit initialization failed")
            if self._on_failure is not None:
                self._on_failure(e)
            return

        # Handler first, then state: a request that sees READY always finds a handler.
        self._handler = handler
        self.state = BootstrapState.READY
        logger.info(
            "Execution unit ready after %.0fms", (time.monotonic() - self._started_at) * 1000,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(receive, send)
            return

        handler = self._handler
        if self.state == BootstrapState.READY and handler is not None:
            await handler(scope, receive, send)
            return

        if scope["type"] == "http":
            await send({
                "type": "http.response.start",
                "status": 503,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"retry-after", b"1"),
                    (b"content-length", str(len(_INITIALIZING_BODY)).encode()),
                ],
            })
            await send({"type": "http.response.body", "body": _INITIALIZING_BODY})
        elif scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1013})

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        # Startup completes at once so uvicorn binds the socket immediately.
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                self.start()
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                if self._task is not None and not self._task.done():
                    self._task.cancel()
                await send({"type": "lifespan.shutdown.complete"})
                return


def main(argv: list[str] | None = None) -> int:
    """Run the unit: bind immediately, load the real app in the background."""
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    factory = argv[0] if argv else os.environ.get("UNIT_APP_FACTORY", DEFAULT_FACTORY)
    host = os.environ.get("UNIT_HOST", "0.0.0.0")  # noqa: S104
    port = int(os.environ.get("PORT", "8080"))

    server: uvicorn.Server | None = None

    def request_exit(_error: BaseException) -> None:
        if server is not None:
            server.should_exit = True

    app = BootstrapApp(factory, on_failure=request_exit)
    config = uvicorn.Config(app, host=host, port=port, lifespan="on", log_config=None)
    server = uvicorn.Server(config)
    logger.info("Binding execution unit listener on %s:%d", host, port)
    server.run()
    return 1 if app.state == BootstrapState.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())

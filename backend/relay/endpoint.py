"""
Embedded HTTP endpoint.

Runs a FastAPI app under uvicorn inside the current event loop, on a socket
we bind ourselves so that a port conflict fails start() immediately.
"""

import asyncio
import contextlib
import logging
import socket

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 5.0  # seconds


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class HttpEndpoint:
    """Owns one listening socket and the uvicorn server serving it."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._requested_port = port
        self._sock: socket.socket | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    @property
    def port(self) -> int:
        if self._sock is None:
            return self._requested_port
        return self._sock.getsockname()[1]

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Bind and serve. Raises OSError if the port cannot be bound."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._requested_port))
            sock.listen(128)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sock = sock

        config = uvicorn.Config(
            self._app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._task.done() or loop.time() > deadline:
                await self.stop()
                raise OSError(f"HTTP endpoint on port {self.port} failed to start")
            await asyncio.sleep(0.01)

        logger.debug(f"HTTP endpoint listening on {self._host}:{self.port}")

    async def stop(self) -> None:
        """Shut the server down and release the port. Safe to call repeatedly."""
        if self._server:
            self._server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=STARTUP_TIMEOUT)
            except asyncio.TimeoutError:
                self._task.cancel()
            except Exception as e:
                logger.warning(f"HTTP endpoint exited with error: {e}")
            self._task = None
        self._server = None
        if self._sock:
            self._sock.close()
            self._sock = None

"""Serve all local chains behind one port.

Chain number ``i`` of an environment is reachable at
``http://localhost:{port}/{i}``. Requests are forwarded as is
to the chain's own Anvil node.
"""

import logging
import threading
import time

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response

logger = logging.getLogger(__name__)


class RpcListener:
    """JSON-RPC reverse proxy in a background thread."""

    def __init__(self, port: int = 8500, host: str = "127.0.0.1", request_timeout: float = 60.0):
        self.port = port
        self.host = host
        self.request_timeout = request_timeout
        #: Chain index -> node URL
        self.upstreams: dict[int, str] = {}
        self.app = self.create_app()
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    def create_app(self) -> FastAPI:
        app = FastAPI(title="xchain-local RPC listener")

        @app.post("/{index}")
        async def forward(index: int, request: Request) -> Response:
            upstream = self.upstreams.get(index)
            if upstream is None:
                raise HTTPException(status_code=404, detail=f"No chain at index {index}")
            body = await request.body()
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                upstream_response = await client.post(upstream, content=body, headers={"Content-Type": "application/json"})
            return Response(
                content=upstream_response.content,
                status_code=upstream_response.status_code,
                media_type="application/json",
            )

        return app

    def add_upstream(self, index: int, url: str):
        assert index not in self.upstreams, f"Chain index {index} already served"
        self.upstreams[index] = url

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, startup_timeout: float = 10.0):
        """Start serving. Returns once the port is bound."""
        assert self._server is None, "Listener already started"
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="rpc-listener", daemon=True)
        self._thread.start()

        deadline = time.time() + startup_timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.time() > deadline:
                raise RuntimeError(f"RPC listener could not start at {self.host}:{self.port}")
            time.sleep(0.05)

        logger.info("Serving %d chains at http://localhost:%d/", len(self.upstreams), self.port)

    def stop(self, timeout: float = 10.0):
        """Stop serving. Idempotent."""
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
        self._server = None
        self._thread = None
        logger.info("RPC listener at port %d stopped", self.port)

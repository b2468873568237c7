"""
Preview Server - The HTTP and WebSocket surface a browser renders previews through.

Routes, all under the resource base ("/_preview" by default):
- GET /view/{channel}: viewer page for one UI session
- GET /doc/{identity}/{context}: assembled entry document of a hosted context
- GET /{token}/{name}: redeem an ephemeral resource reference
- WS  /ws/viewer/{channel}: mount / show / unmount instructions for the viewer
- WS  /ws/context/{identity}/{context}: capability channel of one document

The server runs with uvicorn as a task on the preview event loop, the same
loop the runner, bridges and contexts live on.
"""

import asyncio
import logging
from functools import lru_cache
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, Response

from src.config import get_config
from src.errors import AssemblyError
from src.sandbox.document import ASSETS_DIR
from src.sandbox.hub import PreviewHub
from src.sandbox.runner import PreviewRunner

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}


@lru_cache(maxsize=1)
def _viewer_template() -> str:
    return (ASSETS_DIR / "viewer.html").read_text(encoding="utf-8")


def viewer_markup(resource_base: str) -> str:
    return _viewer_template().replace("__PREVIEW_BASE__", resource_base)


def create_app(runner: PreviewRunner, hub: PreviewHub) -> FastAPI:
    """Build the preview app serving ``runner``'s resources and ``hub``'s documents."""
    base = hub.resource_base
    router = APIRouter(prefix=base, tags=["preview"])

    @router.get("/view/{channel}", response_class=HTMLResponse)
    async def viewer_page(channel: str):
        return HTMLResponse(viewer_markup(base), headers=NO_STORE)

    @router.get("/doc/{identity}/{context}", response_class=HTMLResponse)
    async def entry_document(identity: str, context: str):
        hosted = hub.context(identity, context)
        if hosted is None:
            raise HTTPException(status_code=404, detail="No live preview document")
        return HTMLResponse(hosted.document.html, headers=NO_STORE)

    @router.get("/{token}/{name:path}")
    async def resource(token: str, name: str):
        try:
            media_type, payload = runner.materializer.redeem(f"{base}/{token}/{name}")
        except AssemblyError as e:
            status_code = 410 if e.code == "reference_exhausted" else 404
            raise HTTPException(status_code=status_code, detail=e.message) from e
        return Response(payload, media_type=media_type, headers=NO_STORE)

    @router.websocket("/ws/viewer/{channel}")
    async def viewer_socket(websocket: WebSocket, channel: str):
        await websocket.accept()
        await hub.connect_viewer(channel, websocket)
        try:
            # Viewers only listen; anything they send is ignored
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect_viewer(channel, websocket)

    @router.websocket("/ws/context/{identity}/{context}")
    async def context_socket(websocket: WebSocket, identity: str, context: str):
        hosted = hub.context(identity, context)
        if hosted is None:
            await websocket.close(code=1008, reason="Unknown preview document")
            return
        await websocket.accept()
        if not await hosted.attach(websocket):
            return
        try:
            while True:
                message = await websocket.receive_json()
                if isinstance(message, dict):
                    await hosted.handle(message)
        except WebSocketDisconnect:
            logger.debug("%s context of generation %d disconnected", context, hosted.generation)
        finally:
            hosted.detach(websocket)

    app = FastAPI(title="Extension Preview", docs_url=None, redoc_url=None, openapi_url=None)
    app.include_router(router)
    app.state.hub = hub
    app.state.runner = runner
    return app


class PreviewServer:
    """Serves a preview app with uvicorn on the running event loop."""

    def __init__(self, app: FastAPI, host: Optional[str] = None, port: Optional[int] = None):
        config = get_config()
        self.app = app
        self.host = host or config.server_host
        self.port = port or config.server_port
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.running:
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.ensure_future(self._serve())
        logger.info("Preview server starting on http://%s:%d", self.host, self.port)

    async def _serve(self):
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits instead of raising when it cannot bind
            logger.error("Preview server could not listen on %s:%d", self.host, self.port)

    async def stop(self):
        if not self.running:
            return
        self._server.should_exit = True
        await self._task
        logger.info("Preview server stopped")

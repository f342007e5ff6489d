import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from app.config import settings

logger = logging.getLogger(__name__)


class WebAPIServer:
    """uvicorn в фоновой задаче текущего event loop."""

    def __init__(self, app: FastAPI, *, host: Optional[str] = None, port: Optional[int] = None):
        self.app = app
        self.host = host or settings.WEB_API_HOST
        self.port = port or settings.WEB_API_PORT
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=settings.LOG_LEVEL.lower(),
            lifespan="on",
            loop="asyncio",
            proxy_headers=False,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(), name="web-api-server")

        while not self._server.started:
            if self._task.done():
                # serve() finished before startup: bind error or failed lifespan
                self._task.result()
                raise RuntimeError("Веб-сервер завершился до запуска")
            await asyncio.sleep(0.1)

        logger.info(f"🌐 Веб-API запущено на {self.host}:{self.port}")

    async def stop(self) -> None:
        if not self._server or not self._task:
            return
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None

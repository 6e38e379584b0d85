from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import BaseRoute, Route

logger = logging.getLogger(__name__)


class AgentApp:
    """Starlette service shell: health route, extra routes, optional registry heartbeat.

    When `registry_url` is set, the service upserts its registration payload
    every `heartbeat_interval` seconds while it runs.
    """

    def __init__(
        self,
        *,
        agent_name: str,
        host: str = "127.0.0.1",
        port: int = 8000,
        registry_url: Optional[str] = None,
        heartbeat_interval: int = 60,
        extra_routes: Optional[List[BaseRoute]] = None,
        make_registration_payload: Optional[Callable[[str], Dict[str, Any]]] = None,
        on_shutdown: Optional[List[Callable[[], Awaitable[None]]]] = None,
        debug: bool = False,
    ) -> None:
        self.agent_name = agent_name
        self.host = host.strip()
        self.port = int(port)
        self.registry_url = registry_url.rstrip("/") if registry_url else None
        self.heartbeat_interval = max(1, int(heartbeat_interval))

        self._extra_routes = extra_routes or []
        self._make_registration_payload = make_registration_payload
        self._on_shutdown = on_shutdown or []

        self._heartbeat_task: Optional[asyncio.Task] = None

        routes: List[BaseRoute] = [
            Route("/health", self._health, methods=["GET"]),
            *self._extra_routes,
        ]
        self.app = Starlette(debug=debug, routes=routes, lifespan=self._lifespan)

    def address(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def _health(self, _: Request) -> Response:
        return PlainTextResponse("ok")

    async def _heartbeat_loop(self) -> None:
        payload = self._build_registration_payload()
        url = f"{self.registry_url}/register"
        async with httpx.AsyncClient(timeout=5.0) as client:
            while True:
                try:
                    resp = await client.post(url, json=payload)
                    if resp.status_code >= 400:
                        logger.warning("[%s] registry rejected heartbeat: %s", self.agent_name, resp.status_code)
                except httpx.HTTPError as e:
                    logger.debug("[%s] registry heartbeat failed: %s", self.agent_name, e)
                await asyncio.sleep(self.heartbeat_interval)

    def _build_registration_payload(self) -> Dict[str, Any]:
        if self._make_registration_payload is not None:
            return self._make_registration_payload(self.address())
        endpoints = sorted({path for path in (getattr(r, "path", None) for r in self._extra_routes) if path})
        return {
            "agent_name": self.agent_name,
            "agent_address": self.address(),
            "capabilities": {"role": "http_agent", "endpoints": endpoints},
        }

    @asynccontextmanager
    async def _lifespan(self, _: Starlette) -> AsyncIterator[None]:
        if self.registry_url:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            yield
        finally:
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._heartbeat_task
                self._heartbeat_task = None
            for callback in self._on_shutdown:
                await callback()

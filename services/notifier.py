from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from loguru import logger


@dataclass
class Alert:
    owner: str
    text: str


Sender = Callable[[Alert], Awaitable[None]]


async def log_sender(alert: Alert) -> None:
    logger.bind(owner=alert.owner).info("Notify {}: {}", alert.owner, alert.text)


class WebhookSender:
    """POSTs ``{"owner": ..., "text": ...}`` to a fixed URL."""

    def __init__(self, url: str, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 10.0) -> None:
        self.url = url
        self.client = httpx.AsyncClient(transport=transport, timeout=timeout)

    async def __call__(self, alert: Alert) -> None:
        resp = await self.client.post(self.url, json={"owner": alert.owner, "text": alert.text})
        resp.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


class Notifier:
    def __init__(self, sender: Sender = log_sender) -> None:
        self.sender = sender
        self.queue: asyncio.Queue[Alert] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            alert = await self.queue.get()
            try:
                await self.sender(alert)
            except Exception as exc:
                logger.exception("Failed to send alert: {}", exc)
            finally:
                self.queue.task_done()

    async def send(self, owner: str, text: str) -> None:
        await self.queue.put(Alert(owner=owner, text=text))

    async def stop(self) -> None:
        """Deliver what is queued, then stop the worker."""
        if self._task is None:
            return
        if not self._task.done():
            await self.queue.join()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        close = getattr(self.sender, "close", None)
        if close is not None:
            await close()

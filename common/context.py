from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, TypeVar

from common.errors import TranscriptionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestContext:
    """Per-request cancellation state shared by every call made for one request.

    Network calls go through :meth:`guard` and backoff waits through
    :meth:`sleep`, so a single :meth:`cancel` aborts in-flight requests and
    short-circuits pending sleeps.
    """

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.info("Request %s cancelled", self.request_id)
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise TranscriptionCancelled()

    async def sleep(self, delay: float) -> None:
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise TranscriptionCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the request is cancelled first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TranscriptionCancelled()

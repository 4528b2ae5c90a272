"""Server-Sent Events delivery of payment status updates."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from paycore.services.status_cache import PENDING_STATUS, StatusCache

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


def format_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def stream_status(
    cache: StatusCache,
    key: str,
    *,
    heartbeat_seconds: float = 30.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``key`` until a terminal status, disconnect or shutdown.

    A cached entry is replayed first with ``cached: true``. At most one terminal
    event is delivered, and the subscription is released on every exit path.
    """

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def _on_update(payload: dict[str, Any] | None) -> None:
        # ``set`` may run in a worker thread; hop back onto the stream's loop.
        try:
            loop.call_soon_threadsafe(queue.put_nowait, payload)
        except RuntimeError:
            # Loop already closed, the generator is gone.
            pass

    snapshot, unsubscribe = cache.subscribe_with_snapshot(key, _on_update)
    logger.info("Status stream opened", extra={"key": key, "cached": snapshot is not None})
    try:
        if snapshot is not None:
            yield format_event({**snapshot.to_payload(), "cached": True})
            if snapshot.is_terminal:
                return

        while True:
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("Status stream client disconnected", extra={"key": key})
                    return
                yield HEARTBEAT_FRAME
                continue

            if payload is None:
                logger.info("Status stream closed by shutdown", extra={"key": key})
                return

            yield format_event(payload)
            if payload.get("status") != PENDING_STATUS:
                return
    finally:
        unsubscribe()
        logger.info("Status stream closed", extra={"key": key})


__all__ = ["stream_status", "format_event", "HEARTBEAT_FRAME"]

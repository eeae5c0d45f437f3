"""Server-Sent Events framing for hub subscriptions."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import structlog
from fastapi.responses import StreamingResponse

from branchpod.streaming.hub import Subscription

logger = structlog.get_logger()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


async def event_stream(
    subscription: Subscription,
    keepalive_seconds: float,
) -> AsyncGenerator[str, None]:
    """Yield ``data: <json>`` frames until the subscription ends or the client goes away."""
    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                break
            yield event.to_sse()
    finally:
        subscription.close()
        logger.debug("Stream viewer disconnected", key=str(subscription.key))


def sse_response(subscription: Subscription, keepalive_seconds: float) -> StreamingResponse:
    return StreamingResponse(
        event_stream(subscription, keepalive_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

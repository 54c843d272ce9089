"""Chat, image and video generation endpoints."""
import asyncio
import logging
from typing import Awaitable, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from synexa_gateway.auth import get_current_account
from synexa_gateway.correlation import REQUEST_ID_HEADER, ensure_request_id
from synexa_gateway.errors import ErrorKind, ProviderError, build_error
from synexa_gateway.ledger import Feature
from synexa_gateway.schemas import ChatRequest, ImageRequest, VideoRequest
from synexa_gateway.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ai"])

T = TypeVar("T")

# How often a running call checks whether its client went away
DISCONNECT_POLL_SECONDS = 1.0


def get_services(request: Request) -> Services:
    return request.app.state.services


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return request_id or ensure_request_id(request.headers.get(REQUEST_ID_HEADER))


def enforce_rate_limit(services: Services, account_id: str, request_id: str) -> None:
    if not services.rate_limiter.is_allowed(account_id):
        logger.warning("[%s] Rate limit exceeded for account %s", request_id, account_id)
        raise ProviderError(build_error(ErrorKind.RATE_LIMIT, request_id))


async def run_until_disconnect(request: Request, awaitable: Awaitable[T]) -> T:
    """Await ``awaitable``, cancelling it if the client disconnects first."""
    task = asyncio.ensure_future(awaitable)

    async def watch():
        while True:
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)
            if await request.is_disconnected():
                logger.info("[%s] Client disconnected; cancelling call", request_id_for(request))
                task.cancel()
                return

    watcher = asyncio.ensure_future(watch())
    try:
        return await task
    finally:
        watcher.cancel()


@router.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    account_id: str = Depends(get_current_account),
):
    """
    Chat completion.

    With ``stream=true`` the answer is sent as Server-Sent Events: one
    ``{"content": ...}`` frame per chunk, a final summary frame and ``[DONE]``.
    Credits are only charged once the whole answer has been produced.
    """
    services = get_services(request)
    request_id = request_id_for(request)
    enforce_rate_limit(services, account_id, request_id)

    if body.stream:
        stream = services.facade.open_chat_stream(account_id, body, request_id)
        return StreamingResponse(
            stream,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
            background=BackgroundTask(stream.close),
        )

    result = await run_until_disconnect(
        request, services.facade.execute(account_id, Feature.CHAT, body, request_id)
    )
    return result.to_response()


@router.post("/image")
async def image(
    body: ImageRequest,
    request: Request,
    account_id: str = Depends(get_current_account),
):
    """Generate one image (placeholder image in demo mode)."""
    services = get_services(request)
    request_id = request_id_for(request)
    enforce_rate_limit(services, account_id, request_id)
    result = await run_until_disconnect(
        request, services.facade.execute(account_id, Feature.IMAGE, body, request_id)
    )
    return result.to_response()


@router.post("/video")
async def video(
    body: VideoRequest,
    request: Request,
    account_id: str = Depends(get_current_account),
):
    """Generate a short-video script; the video itself is a sample clip."""
    services = get_services(request)
    request_id = request_id_for(request)
    enforce_rate_limit(services, account_id, request_id)
    result = await run_until_disconnect(
        request, services.facade.execute(account_id, Feature.VIDEO, body, request_id)
    )
    return result.to_response()

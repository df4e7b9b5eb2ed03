"""OpenAI-compatible chat completion and model listing endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from qwenproxy.api.dependencies import ProxyServiceDep
from qwenproxy.api.middleware.auth import verify_token
from qwenproxy.core.logging import get_logger
from qwenproxy.models.openai import ChatCompletionRequest


router = APIRouter(dependencies=[Depends(verify_token)])
logger = get_logger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/chat/completions", response_model=None)
async def create_chat_completion(
    request: ChatCompletionRequest, service: ProxyServiceDep
) -> StreamingResponse | dict[str, Any]:
    """Create a chat completion, streamed as SSE unless ``stream`` is false."""
    logger.debug(
        "chat_completion_request",
        model=request.model,
        stream=request.stream,
        message_count=len(request.messages),
    )

    if not request.stream:
        return await service.chat_completion(request)

    stream = await service.stream_chat_completion(request)
    return StreamingResponse(
        stream, media_type="text/event-stream", headers=STREAM_HEADERS
    )


@router.get("/models")
async def list_models(service: ProxyServiceDep) -> dict[str, Any]:
    """List upstream models together with their derived variants."""
    return await service.list_models()

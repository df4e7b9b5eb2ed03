"""OpenAI chat requests to upstream chat bodies."""

import base64
import binascii
import uuid
from dataclasses import dataclass
from typing import Any

from qwenproxy.core.logging import get_logger
from qwenproxy.models.openai import (
    INLINE_IMAGE_PATTERN,
    ChatCompletionRequest,
    ChatMessage,
    ImageUrlContentPart,
    TextContentPart,
    dump_part,
)
from qwenproxy.models.upstream import ChatType, FeatureConfig, UpstreamChatRequest
from qwenproxy.services.upload import AssetUploader, UploadError


logger = get_logger(__name__)

SEARCH_SUFFIX = "-search"
IMAGE_SUFFIX = "-image"
VIDEO_SUFFIX = "-video"
THINKING_SUFFIX = "-thinking"
MODEL_SUFFIXES = (SEARCH_SUFFIX, THINKING_SUFFIX, IMAGE_SUFFIX, VIDEO_SUFFIX)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
}
DEFAULT_EXTENSION = "png"

INVALID_IMAGE_PLACEHOLDER = "[Invalid image data]"


@dataclass(frozen=True)
class ModelRoute:
    """Upstream model name and generation mode derived from a model id."""

    model: str
    chat_type: ChatType
    thinking_enabled: bool


def resolve_model(model_id: str) -> ModelRoute:
    """Map a proxy model identifier onto the upstream model and chat type.

    ``-search``, ``-image`` and ``-video`` select the chat type (checked in
    that order, the last match wins); ``-thinking`` only enables reasoning
    phases. All known suffixes are stripped from the upstream model name.
    """
    chat_type = ChatType.TEXT
    if SEARCH_SUFFIX in model_id:
        chat_type = ChatType.SEARCH
    if IMAGE_SUFFIX in model_id:
        chat_type = ChatType.IMAGE
    if VIDEO_SUFFIX in model_id:
        chat_type = ChatType.VIDEO

    model = model_id
    for suffix in MODEL_SUFFIXES:
        model = model.replace(suffix, "")

    return ModelRoute(
        model=model,
        chat_type=chat_type,
        thinking_enabled=THINKING_SUFFIX in model_id,
    )


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type.lower(), DEFAULT_EXTENSION)


def collapse_content(parts: list[dict[str, Any]]) -> str | list[dict[str, Any]]:
    """Reduce processed parts to the form the upstream expects.

    Pure text becomes one newline-joined string. When any non-text part is
    present, only runs of adjacent text parts are merged.
    """
    if all(part.get("type") == "text" for part in parts):
        return "\n".join(part.get("text", "") for part in parts)

    collapsed: list[dict[str, Any]] = []
    pending: list[str] = []
    for part in parts:
        if part.get("type") == "text":
            pending.append(part.get("text", ""))
            continue
        if pending:
            collapsed.append({"type": "text", "text": "\n".join(pending)})
            pending = []
        collapsed.append(part)
    if pending:
        collapsed.append({"type": "text", "text": "\n".join(pending)})
    return collapsed


class RequestTransformer:
    """Builds upstream request bodies, uploading inline images on the way."""

    def __init__(self, uploader: AssetUploader, default_model: str) -> None:
        self._uploader = uploader
        self._default_model = default_model

    async def transform(
        self, request: ChatCompletionRequest, token: str
    ) -> UpstreamChatRequest:
        """Convert an inbound request into the upstream chat body.

        Args:
            request: Validated inbound request
            token: Primary token used for any attachment uploads
        """
        model_id = request.model or self._default_model
        route = resolve_model(model_id)
        messages = [await self.transform_message(m, token) for m in request.messages]

        logger.debug(
            "request_transformed",
            model=model_id,
            upstream_model=route.model,
            chat_type=route.chat_type.value,
            thinking_enabled=route.thinking_enabled,
            message_count=len(messages),
        )

        return UpstreamChatRequest(
            model=route.model,
            messages=messages,
            chat_type=route.chat_type,
            session_id=str(uuid.uuid4()),
            chat_id=str(uuid.uuid4()),
            feature_config=FeatureConfig(thinking_enabled=route.thinking_enabled),
        )

    async def transform_message(
        self, message: ChatMessage, token: str
    ) -> dict[str, Any]:
        payload = message.model_dump(exclude_none=True, exclude={"content"})
        if not isinstance(message.content, list):
            if message.content is not None:
                payload["content"] = message.content
            return payload

        parts: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ImageUrlContentPart):
                if part.image_url.is_inline:
                    parts.append(await self._upload_inline_image(part, token))
                else:
                    parts.append(
                        {"type": "text", "text": f"![]( {part.image_url.url} )"}
                    )
            elif isinstance(part, TextContentPart):
                parts.append({"type": "text", "text": part.text})
            else:
                parts.append(dump_part(part))

        payload["content"] = collapse_content(parts)
        return payload

    async def _upload_inline_image(
        self, part: ImageUrlContentPart, token: str
    ) -> dict[str, Any]:
        match = INLINE_IMAGE_PATTERN.match(part.image_url.url)
        if not match:
            logger.warning("inline_image_malformed")
            return {"type": "text", "text": INVALID_IMAGE_PLACEHOLDER}

        mime_type, encoded = match.groups()
        try:
            data = base64.b64decode("".join(encoded.split()), validate=True)
        except (binascii.Error, ValueError):
            data = b""
        if not data:
            logger.warning("inline_image_decode_failed", mime_type=mime_type)
            return {"type": "text", "text": INVALID_IMAGE_PLACEHOLDER}

        filename = f"{uuid.uuid4()}.{extension_for(mime_type)}"
        try:
            result = await self._uploader.upload(data, filename, token)
        except UploadError as e:
            logger.error("inline_image_upload_failed", filename=filename, error=str(e))
            return {"type": "text", "text": f"[Image upload failed: {e}]"}

        return {"type": "image", "image": result.file_url}

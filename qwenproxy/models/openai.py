"""OpenAI-compatible request models accepted by the proxy.

Message content is either a plain string or a list of typed parts. Parts are
validated at ingress into text, image URL (remote or inline ``data:`` URL), or
any other typed part that is forwarded untouched.
"""

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


INLINE_IMAGE_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)
KNOWN_PART_TYPES = ("text", "image_url")


class TextContentPart(BaseModel):
    """Plain text part."""

    type: Literal["text"]
    text: str = ""

    model_config = ConfigDict(extra="allow")


class ImageUrl(BaseModel):
    url: str
    detail: str | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_inline(self) -> bool:
        """Whether the URL carries the image bytes as a ``data:`` URL."""
        return self.url.startswith("data:")


class ImageUrlContentPart(BaseModel):
    """Image part, either a remote URL or inline base64 data."""

    type: Literal["image_url"]
    image_url: ImageUrl

    model_config = ConfigDict(extra="allow")


class OtherContentPart(BaseModel):
    """Any other typed part; forwarded as received."""

    type: str

    model_config = ConfigDict(extra="allow")

    @field_validator("type")
    @classmethod
    def reject_known_types(cls, v: str) -> str:
        """Keep malformed text and image parts from passing as unknown parts."""
        if v in KNOWN_PART_TYPES:
            raise ValueError(f"Malformed {v!r} content part")
        return v


ContentPart = Annotated[
    TextContentPart | ImageUrlContentPart | OtherContentPart,
    Field(union_mode="left_to_right"),
]


class ChatMessage(BaseModel):
    """OpenAI-compatible message."""

    role: str = Field(..., description="The role of the message sender")
    content: str | list[ContentPart] | None = Field(
        default=None, description="Plain text or a list of typed content parts"
    )

    model_config = ConfigDict(extra="allow")


class ChatCompletionRequest(BaseModel):
    """Inbound chat completion request."""

    model: str | None = Field(default=None, description="Requested model identifier")
    messages: list[ChatMessage] = Field(..., min_length=1)
    stream: bool = Field(default=False, description="Stream the response as SSE")

    model_config = ConfigDict(extra="allow")


def dump_part(part: Any) -> dict[str, Any]:
    """Serialize a content part back to its wire shape."""
    if isinstance(part, BaseModel):
        return part.model_dump(exclude_none=True)
    return dict(part)

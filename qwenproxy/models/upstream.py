"""Request and response shapes of the upstream chat service."""

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatType(str, Enum):
    """Upstream generation mode selected from the model suffix."""

    TEXT = "t2t"
    SEARCH = "search"
    IMAGE = "t2i"
    VIDEO = "t2v"


class FeatureConfig(BaseModel):
    output_schema: str = "phase"
    thinking_enabled: bool = False


class UpstreamChatRequest(BaseModel):
    """Body posted to the upstream chat completions endpoint."""

    model: str
    messages: list[dict[str, Any]]
    stream: bool = True
    incremental_output: bool = True
    chat_type: ChatType = ChatType.TEXT
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chat_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    feature_config: FeatureConfig = Field(default_factory=FeatureConfig)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class StsToken(BaseModel):
    """Temporary object-storage credentials issued for a single upload."""

    access_key_id: str = Field(..., min_length=1)
    access_key_secret: str = Field(..., min_length=1)
    security_token: str = Field(..., min_length=1)
    bucketname: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    file_url: str = Field(..., min_length=1)
    file_id: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="ignore")


class UploadResult(BaseModel):
    file_url: str
    file_id: str

"""Request transformation, attachment upload, stream transduction and orchestration."""

from .proxy_service import ProxyService, expand_model_variants
from .request_transformer import ModelRoute, RequestTransformer, resolve_model
from .stream_transformer import CompletionAggregator, PhaseStreamTransducer
from .upload import (
    AssetUploader,
    ObjectWriteError,
    StsExchangeError,
    UploadError,
    UploadRetriesExhaustedError,
)


__all__ = [
    "AssetUploader",
    "CompletionAggregator",
    "ModelRoute",
    "ObjectWriteError",
    "PhaseStreamTransducer",
    "ProxyService",
    "RequestTransformer",
    "StsExchangeError",
    "UploadError",
    "UploadRetriesExhaustedError",
    "expand_model_variants",
    "resolve_model",
]

"""Per-request orchestration of the proxy.

A chat request acquires a primary token, rewrites the request for the
upstream (uploading inline images), attaches a session cookie when one is
pooled, and streams the upstream reply back through the phase transducer.
Upstream client errors are read as a verdict on the credentials used and
invalidate them; upstream server or transport errors leave them untouched.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx

from qwenproxy.config.settings import UpstreamSettings
from qwenproxy.core.errors import (
    ServiceUnavailableError,
    UpstreamConnectionError,
    UpstreamHTTPError,
)
from qwenproxy.core.logging import get_logger
from qwenproxy.credentials.models import CredentialKind, mask_secret
from qwenproxy.credentials.pool import CredentialPoolManager
from qwenproxy.models.openai import ChatCompletionRequest
from qwenproxy.services.request_transformer import (
    IMAGE_SUFFIX,
    SEARCH_SUFFIX,
    THINKING_SUFFIX,
    RequestTransformer,
)
from qwenproxy.services.stream_transformer import (
    CompletionAggregator,
    PhaseStreamTransducer,
)
from qwenproxy.services.upload import bearer


logger = get_logger(__name__)

NO_TOKEN_MESSAGE = "No valid upstream API key available"


class ProxyService:
    """Sequences credential selection, transformation and the upstream call."""

    def __init__(
        self,
        pool: CredentialPoolManager,
        client: httpx.AsyncClient,
        transformer: RequestTransformer,
        upstream: UpstreamSettings,
    ) -> None:
        self._pool = pool
        self._client = client
        self._transformer = transformer
        self._upstream = upstream

    async def stream_chat_completion(
        self, request: ChatCompletionRequest
    ) -> AsyncIterator[bytes]:
        """Start the upstream call and return the OpenAI-format SSE stream.

        Errors before the first byte are raised from this coroutine; the
        returned iterator releases the upstream connection when it is closed,
        including when the client goes away mid-stream.

        Raises:
            ServiceUnavailableError: No valid primary token
            UpstreamHTTPError: Upstream answered with a 4xx status
            UpstreamConnectionError: Transport failure or upstream 5xx
        """
        token = await self._pool.select_valid(CredentialKind.API_KEY)
        if token is None:
            logger.warning("chat_request_rejected_no_token")
            raise ServiceUnavailableError(NO_TOKEN_MESSAGE)

        upstream_request = await self._transformer.transform(request, token)
        cookie = await self._pool.select_valid(CredentialKind.SSXMOD_ITNA)

        http_request = self._client.build_request(
            "POST",
            self._upstream.chat_url,
            json=upstream_request.to_payload(),
            headers=self._build_headers(token, cookie),
        )

        logger.info(
            "upstream_chat_request",
            model=upstream_request.model,
            chat_type=upstream_request.chat_type.value,
            thinking_enabled=upstream_request.feature_config.thinking_enabled,
            token=mask_secret(token),
            has_cookie=cookie is not None,
        )

        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("upstream_chat_transport_error", error=str(e))
            raise UpstreamConnectionError(details=str(e)) from e

        if not response.is_success:
            body = await _read_and_close(response)
            await self._handle_failure(response.status_code, body, token, cookie)

        transducer = PhaseStreamTransducer(
            fallback_model=self._upstream.stream_model_fallback
        )
        return self._relay(response, transducer)

    async def chat_completion(self, request: ChatCompletionRequest) -> dict[str, Any]:
        """Run the streamed call to completion and return one JSON object."""
        stream = await self.stream_chat_completion(request)
        aggregator = CompletionAggregator()
        async for event in stream:
            aggregator.add_event(event)
        return aggregator.result()

    async def list_models(self) -> dict[str, Any]:
        """Fetch the upstream catalog and add the suffixed model variants."""
        token = await self._pool.select_valid(CredentialKind.API_KEY)
        if token is None:
            raise ServiceUnavailableError(NO_TOKEN_MESSAGE)

        try:
            response = await self._client.get(
                self._upstream.models_url,
                headers={
                    "Authorization": bearer(token),
                    "User-Agent": self._upstream.user_agent,
                },
            )
            response.raise_for_status()
            models = response.json().get("data") or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("upstream_models_fetch_failed", error=str(e))
            raise UpstreamConnectionError(
                "Failed to fetch models from upstream API", details=str(e)
            ) from e

        return {"object": "list", "data": expand_model_variants(models)}

    def _build_headers(self, token: str, cookie: str | None) -> dict[str, str]:
        headers = {
            "Authorization": bearer(token),
            "Content-Type": "application/json",
            "User-Agent": self._upstream.user_agent,
        }
        if cookie:
            headers["Cookie"] = f"ssxmod_itna={cookie}"
        return headers

    async def _handle_failure(
        self, status_code: int, body: str, token: str, cookie: str | None
    ) -> None:
        logger.error(
            "upstream_chat_error",
            status_code=status_code,
            body=body[:500],
            token=mask_secret(token),
        )

        if 400 <= status_code < 500:
            if self._upstream.should_invalidate(status_code):
                await self._pool.invalidate(CredentialKind.API_KEY, token)
                if cookie is not None:
                    await self._pool.invalidate(CredentialKind.SSXMOD_ITNA, cookie)
            raise UpstreamHTTPError(status_code, body)

        raise UpstreamConnectionError(
            f"Upstream API returned {status_code}", details=body
        )

    async def _relay(
        self, response: httpx.Response, transducer: PhaseStreamTransducer
    ) -> AsyncIterator[bytes]:
        try:
            try:
                async for chunk in response.aiter_bytes():
                    for event in transducer.feed(chunk):
                        yield event
            except httpx.HTTPError as e:
                logger.error(
                    "upstream_stream_interrupted",
                    completion_id=transducer.completion_id,
                    error=str(e),
                )
            for event in transducer.finish():
                yield event
        finally:
            await response.aclose()
            logger.debug(
                "upstream_stream_closed", completion_id=transducer.completion_id
            )


def expand_model_variants(models: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Append derived ``-thinking``, ``-search`` and ``-image`` entries.

    Each variant directly follows its base model.
    """
    expanded: list[dict[str, Any]] = []
    for model in models:
        if not isinstance(model, dict) or "id" not in model:
            continue
        expanded.append(model)

        meta = (model.get("info") or {}).get("meta") or {}
        abilities = meta.get("abilities") or {}
        chat_types = meta.get("chat_type") or []

        if abilities.get("thinking"):
            expanded.append({**model, "id": f"{model['id']}{THINKING_SUFFIX}"})
        if "search" in chat_types:
            expanded.append({**model, "id": f"{model['id']}{SEARCH_SUFFIX}"})
        if "t2i" in chat_types:
            expanded.append({**model, "id": f"{model['id']}{IMAGE_SUFFIX}"})
    return expanded


async def _read_and_close(response: httpx.Response) -> str:
    try:
        await response.aread()
        return response.text
    except httpx.HTTPError:
        return ""
    finally:
        await response.aclose()

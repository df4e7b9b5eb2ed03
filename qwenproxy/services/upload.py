"""Upload of inline attachments to the upstream's object storage.

An upload runs in two steps. First a primary token is exchanged for
short-lived storage credentials scoped to one object; this exchange is
retried with exponential backoff. Then the bytes are written once with a
SigV4-signed PUT against the S3-compatible endpoint; that write is never
retried here and its failure propagates to the caller.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from urllib.parse import quote, urlsplit, urlunsplit

import httpx
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from qwenproxy.config.settings import UploadSettings, UpstreamSettings
from qwenproxy.core.logging import get_logger
from qwenproxy.credentials.models import mask_secret
from qwenproxy.models.upstream import StsToken, UploadResult


logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class UploadError(Exception):
    """Base exception for attachment upload failures."""

    pass


class StsExchangeError(UploadError):
    """A single temporary-credential exchange attempt failed."""

    pass


class UploadRetriesExhaustedError(UploadError):
    """The credential exchange kept failing until the attempt cap."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"Credential exchange failed after {attempts} attempts{detail}"
        )
        self.attempts = attempts
        self.last_error = last_error


class ObjectWriteError(UploadError):
    """Writing the object to storage failed."""

    pass


def content_type_for(filename: str) -> str:
    """Infer the object content type from the filename extension."""
    lowered = filename.lower()
    for extension, content_type in _CONTENT_TYPES.items():
        if lowered.endswith(extension):
            return content_type
    return DEFAULT_CONTENT_TYPE


def bearer(token: str) -> str:
    return token if token.startswith("Bearer ") else f"Bearer {token}"


class AssetUploader:
    """Uploads raw bytes and returns the durable URL issued by the upstream."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream: UpstreamSettings,
        settings: UploadSettings,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._client = client
        self._upstream = upstream
        self._settings = settings
        self._sleep = sleep

    async def upload(self, data: bytes, filename: str, token: str) -> UploadResult:
        """Upload ``data`` under ``filename`` using ``token`` for the exchange.

        Raises:
            UploadRetriesExhaustedError: The credential exchange never succeeded
            ObjectWriteError: The object write failed
        """
        content_type = content_type_for(filename)
        filetype = "image" if content_type.startswith("image/") else "file"

        sts = await self.request_sts_token(filename, len(data), filetype, token)
        await self.put_object(sts, data, content_type)

        logger.info(
            "asset_upload_completed",
            filename=filename,
            size=len(data),
            file_id=sts.file_id,
        )
        return UploadResult(file_url=sts.file_url, file_id=sts.file_id)

    async def request_sts_token(
        self, filename: str, filesize: int, filetype: str, token: str
    ) -> StsToken:
        """Exchange ``token`` for temporary storage credentials, with retries."""
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.backoff_initial,
                max=self._settings.backoff_max,
            ),
            retry=retry_if_exception_type(StsExchangeError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

        try:
            async for attempt in retryer:
                with attempt:
                    return await self._request_sts_token_once(
                        filename, filesize, filetype, token
                    )
        except RetryError as e:
            last_attempt = e.last_attempt
            logger.error(
                "sts_token_retries_exhausted",
                attempts=last_attempt.attempt_number,
                filename=filename,
            )
            raise UploadRetriesExhaustedError(
                last_attempt.attempt_number, last_attempt.exception()
            ) from last_attempt.exception()

        raise AssertionError("unreachable")  # pragma: no cover

    async def _request_sts_token_once(
        self, filename: str, filesize: int, filetype: str, token: str
    ) -> StsToken:
        headers = {
            "Authorization": bearer(token),
            "Content-Type": "application/json",
            "x-request-id": str(uuid.uuid4()),
            "User-Agent": self._upstream.user_agent,
        }
        payload = {"filename": filename, "filesize": filesize, "filetype": filetype}

        try:
            response = await self._client.post(
                self._upstream.sts_url, json=payload, headers=headers
            )
        except httpx.HTTPError as e:
            raise StsExchangeError(f"STS request failed: {e}") from e

        if not response.is_success:
            raise StsExchangeError(
                f"STS request failed: {response.status_code} {response.reason_phrase}"
            )

        try:
            return StsToken.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise StsExchangeError("Incomplete STS token response") from e

    async def put_object(self, sts: StsToken, data: bytes, content_type: str) -> None:
        """Write ``data`` to the bucket path named in ``sts``."""
        url = self.object_url(sts)
        aws_request = AWSRequest(
            method="PUT",
            url=url,
            data=data,
            headers={"Content-Type": content_type},
        )
        S3SigV4Auth(
            Credentials(sts.access_key_id, sts.access_key_secret, sts.security_token),
            "s3",
            sts.region,
        ).add_auth(aws_request)

        logger.debug(
            "object_write_start",
            bucket=sts.bucketname,
            path=sts.file_path,
            access_key=mask_secret(sts.access_key_id),
        )

        try:
            response = await self._client.put(
                url, content=data, headers=dict(aws_request.headers.items())
            )
        except httpx.HTTPError as e:
            raise ObjectWriteError(f"Object write failed: {e}") from e

        if not response.is_success:
            raise ObjectWriteError(
                f"Object write failed: {response.status_code} {response.text[:200]}"
            )

    def object_url(self, sts: StsToken) -> str:
        endpoint = urlsplit(self._settings.endpoint_template.format(region=sts.region))
        key = quote(sts.file_path.lstrip("/"), safe="/~")
        if self._settings.addressing_style == "path":
            return urlunsplit(
                (endpoint.scheme, endpoint.netloc, f"/{sts.bucketname}/{key}", "", "")
            )
        return urlunsplit(
            (endpoint.scheme, f"{sts.bucketname}.{endpoint.netloc}", f"/{key}", "", "")
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "sts_token_request_retry",
            attempt=retry_state.attempt_number,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(outcome.exception()) if outcome else None,
        )

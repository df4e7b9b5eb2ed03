"""Shared HTTP client construction.

One ``httpx.AsyncClient`` is created at startup and reused for the upstream
chat call, the models catalog, the credential exchange and the object write.
"""

import os
from pathlib import Path
from typing import Any

import httpx

from qwenproxy.config.settings import Settings
from qwenproxy.core.logging import get_logger


logger = get_logger(__name__)


class HTTPClientFactory:
    """Factory for creating HTTP clients with consistent timeouts and limits."""

    @staticmethod
    def create_client(
        *,
        settings: Settings | None = None,
        timeout_connect: float = 10.0,
        timeout_read: float = 300.0,  # Long timeout for streaming
        max_keepalive_connections: int = 50,
        max_connections: int = 500,
        verify: bool | str = True,
        **kwargs: Any,
    ) -> httpx.AsyncClient:
        """Create an HTTP client with the proxy's recommended configuration.

        Args:
            settings: Optional settings; upstream timeouts override the arguments
            timeout_connect: Connection timeout in seconds
            timeout_read: Read timeout in seconds (long for streaming)
            max_keepalive_connections: Max keep-alive connections for reuse
            max_connections: Max total concurrent connections
            verify: SSL verification (True/False or path to CA bundle)
            **kwargs: Additional httpx.AsyncClient arguments

        Returns:
            Configured httpx.AsyncClient instance
        """
        if settings is not None:
            timeout_connect = settings.upstream.timeout_connect
            timeout_read = settings.upstream.timeout_read

        proxy = _get_proxy_url()

        if isinstance(verify, bool) and verify:
            verify = _get_ssl_context()

        timeout = httpx.Timeout(
            connect=timeout_connect,
            read=timeout_read,
            write=30.0,
            pool=30.0,
        )

        limits = httpx.Limits(
            max_keepalive_connections=max_keepalive_connections,
            max_connections=max_connections,
        )

        transport = httpx.AsyncHTTPTransport(
            limits=limits,
            verify=verify,
            proxy=proxy,
        )

        logger.info(
            "http_client_created",
            timeout_connect=timeout_connect,
            timeout_read=timeout_read,
            max_connections=max_connections,
            has_proxy=proxy is not None,
        )

        return httpx.AsyncClient(timeout=timeout, transport=transport, **kwargs)


def _get_proxy_url() -> str | None:
    """Get proxy URL from environment variables.

    Returns:
        str or None: Proxy URL if any proxy is set
    """
    https_proxy = os.environ.get("HTTPS_PROXY") or os.environ.get("https_proxy")
    all_proxy = os.environ.get("ALL_PROXY")
    http_proxy = os.environ.get("HTTP_PROXY") or os.environ.get("http_proxy")

    proxy_url = https_proxy or all_proxy or http_proxy

    if proxy_url:
        logger.debug("proxy_configured", proxy_url=proxy_url)

    return proxy_url


def _get_ssl_context() -> str | bool:
    """Get SSL verification configuration from environment variables.

    Returns:
        Path to a CA bundle, True for default verification, or False when
        SSL_VERIFY explicitly disables it
    """
    ca_bundle = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
    ssl_verify = os.environ.get("SSL_VERIFY", "true").lower()

    if ca_bundle and Path(ca_bundle).exists():
        logger.info("ssl_ca_bundle_configured", ca_bundle_path=ca_bundle)
        return ca_bundle
    if ssl_verify in ("false", "0", "no"):
        logger.warning("ssl_verification_disabled")
        return False
    return True

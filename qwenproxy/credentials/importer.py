"""Extract pool credentials from raw browser cookie headers."""

from collections.abc import Iterable

from pydantic import BaseModel

from qwenproxy.core.logging import get_logger
from qwenproxy.credentials.models import CredentialKind
from qwenproxy.credentials.pool import CredentialPoolManager


logger = get_logger(__name__)

TOKEN_COOKIE = "token"
SSXMOD_COOKIE = "ssxmod_itna"


class ImportResult(BaseModel):
    """Number of newly pooled credentials per kind."""

    api_key: int = 0
    ssxmod_itna: int = 0


def parse_cookie_header(raw: str) -> dict[str, str]:
    """Split a ``Cookie`` header string into name/value pairs.

    A leading ``Cookie:`` prefix is tolerated; later duplicates win.
    """
    text = raw.strip()
    if text.lower().startswith("cookie:"):
        text = text[len("cookie:") :]

    cookies: dict[str, str] = {}
    for pair in text.split(";"):
        name, sep, value = pair.partition("=")
        if not sep:
            continue
        name = name.strip()
        if name:
            cookies[name] = value.strip().strip('"')
    return cookies


def looks_like_token(value: str) -> bool:
    """Heuristic for values that plausibly are upstream bearer tokens."""
    if value.startswith("sk-"):
        return True
    if value.count(".") == 2 and len(value) > 50:
        return True
    return len(value) > 20


def extract_credentials(raw: str) -> tuple[str | None, str | None]:
    """Return the (token, ssxmod_itna) pair found in one cookie header."""
    cookies = parse_cookie_header(raw)
    token = cookies.get(TOKEN_COOKIE) or None
    if token is not None and not looks_like_token(token):
        logger.debug("cookie_token_rejected", length=len(token))
        token = None
    ssxmod = cookies.get(SSXMOD_COOKIE) or None
    return token, ssxmod


async def import_cookie_headers(
    pool: CredentialPoolManager, raw_headers: Iterable[str]
) -> ImportResult:
    """Insert every credential found in ``raw_headers`` into its pool."""
    result = ImportResult()
    for raw in raw_headers:
        token, ssxmod = extract_credentials(raw)
        if token and await pool.insert(CredentialKind.API_KEY, token):
            result.api_key += 1
        if ssxmod and await pool.insert(CredentialKind.SSXMOD_ITNA, ssxmod):
            result.ssxmod_itna += 1

    logger.info(
        "cookie_import_completed",
        added_api_keys=result.api_key,
        added_ssxmod_itna=result.ssxmod_itna,
    )
    return result

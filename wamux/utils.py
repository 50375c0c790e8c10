import logging
from typing import Any, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048


def sanitize_error_message(error: Any, context: Optional[str] = None) -> str:
    """
    Turn an unexpected error into a message safe to return to API clients.

    The detailed error is logged server-side; the returned text never
    includes connection strings, URLs, hostnames or secrets.

    Args:
        error: The error object or error message string
        context: Optional context about where the error occurred

    Returns:
        Generic error message safe for client exposure
    """
    error_str = str(error)
    if context:
        logger.error(f"[{context}] {error_str}")
    else:
        logger.error(error_str)

    if context:
        return f"Processing error occurred in {context}"
    return "An error occurred while processing the request"


def validate_webhook_url(url: str) -> str:
    """
    Validate a webhook target URL.

    Only absolute http(s) URLs with a hostname are accepted. Private
    addresses are allowed, since automation platforms commonly run on the
    same network.

    Returns:
        The stripped URL

    Raises:
        ValueError: If the URL is unusable
    """
    if not url or not isinstance(url, str):
        raise ValueError("URL must be a non-empty string")

    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise ValueError(f"URL too long: {len(url)} characters (max: {MAX_URL_LENGTH})")
    if any(ch in url for ch in ("\r", "\n", "\0", " ")):
        raise ValueError("URL contains forbidden characters")

    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(
            f"URL scheme '{parsed.scheme}' is not allowed. Only http:// and https:// are permitted."
        )
    if not parsed.netloc or not parsed.hostname:
        raise ValueError("URL must include a hostname")
    return url

"""Log sanitization utilities.

Feed rows and upstream bodies are untrusted text; this module neutralizes
control characters before they reach a log line (CWE-117) and masks
credentials embedded in URLs.
"""

import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "***REDACTED***"

# Query parameters that may carry a credential
SENSITIVE_PARAMS = {"apikey", "api_key", "key", "token", "access_token", "secret"}


def sanitize_log(value: Any, max_length: int = 200) -> str:
    """Sanitize untrusted input for safe logging.

    Args:
        value: The value to sanitize. Can be any type, will be converted to string.
        max_length: Maximum length of the output string. Default 200.

    Returns:
        A sanitized string safe for logging.

    Example:
        >>> sanitize_log("1HGCM\\nCRITICAL: hacked")
        '1HGCM\\\\nCRITICAL: hacked'
    """
    if value is None:
        return "[None]"

    text = str(value)
    text = text.replace("\n", "\\n")
    text = text.replace("\r", "\\r")
    text = text.replace("\t", "\\t")
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)

    if len(text) > max_length:
        text = text[:max_length] + "...[truncated]"

    return text


def sanitize_exception(exc: BaseException, max_length: int = 500) -> str:
    """Sanitize exception message for logging."""
    return sanitize_log(str(exc), max_length)


def redact_url(url: str) -> str:
    """Mask credential-like query parameters and userinfo in a URL.

    Example:
        >>> redact_url("https://feed.example.com/inventory?page=1&apikey=abc")
        'https://feed.example.com/inventory?page=1&apikey=%2A%2A%2AREDACTED%2A%2A%2A'
    """
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"{REDACTED}@{netloc.rsplit('@', 1)[1]}"

    query = parse_qsl(parts.query, keep_blank_values=True)
    if query:
        query = [(k, REDACTED if k.lower() in SENSITIVE_PARAMS else v) for k, v in query]

    return urlunsplit((parts.scheme, netloc, parts.path, urlencode(query), parts.fragment))

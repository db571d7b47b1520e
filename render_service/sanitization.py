"""Utilities for sanitizing request content before it reaches the logs."""

import re
from urllib.parse import urlparse


def sanitize_for_logging(text: str, max_length: int = 1000) -> str:
    """Sanitize text for safe logging by:
    - Converting non-string input to string
    - Replacing newlines with spaces and dropping other control characters
    - Truncating to `max_length` and appending '...[truncated]' if necessary

    Args:
        text (str): The input text to sanitize.
        max_length (int, optional): Maximum allowed length of the sanitized text. Defaults to 1000.

    Returns:
        str: The sanitized text safe for logging.

    """
    if not isinstance(text, str):
        text = str(text)

    text = text.replace("\n", " ").replace("\r", " ")
    text = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", text)

    if len(text) > max_length:
        text = text[:max_length] + "...[truncated]"

    return text


def sanitize_url_for_logging(url: str | None) -> str:
    """Sanitize a render source URL for logging: credentials, query and fragment are dropped.

    Args:
        url: The URL to sanitize. If None, returns 'None'.

    Returns:
        str: Sanitized URL.

    """
    if url is None:
        return "None"

    try:
        parsed = urlparse(url)
        safe_url = f"{parsed.scheme}://{parsed.hostname or ''}"
        if parsed.port:
            safe_url += f":{parsed.port}"
        safe_url += parsed.path or "/"
        return sanitize_for_logging(safe_url, max_length=200)
    except ValueError:
        # Malformed netloc, e.g. an invalid port
        return sanitize_for_logging(url, max_length=200)


def describe_request_source(source: str, content: str) -> str:
    """Short loggable description of a render source."""
    if source == "url":
        return f"url={sanitize_url_for_logging(content)}"
    return f"html={len(content)} chars"

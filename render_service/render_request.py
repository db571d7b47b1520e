"""
Render request model and fingerprinting.

A RenderRequest is built once at the HTTP boundary from validated options and
never mutated afterwards. Its fingerprint is the cache key and the dedup
identifier for in-flight jobs.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from render_service.errors import ValidationError

SOURCE_HTML = "html"
SOURCE_URL = "url"

MAX_CONTENT_BYTES = 2 * 1024 * 1024

LOSSY_FORMATS = frozenset({"jpeg"})

MEDIA_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "pdf": "application/pdf",
}

FILE_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "pdf": "pdf",
}


class RenderOptions(BaseModel):
    """
    Options controlling how a document is rendered.

    Attributes:
        width: Viewport width in pixels (1-4000).
        height: Viewport height in pixels (1-4000).
        quality: Encoder quality (1-100), only meaningful for jpeg.
        format: Output format: jpeg, png or pdf.
        full_page: Capture the full scrollable page instead of the viewport only.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    width: int = Field(800, ge=1, le=4000)
    height: int = Field(600, ge=1, le=4000)
    quality: int = Field(80, ge=1, le=100)
    format: Literal["jpeg", "png", "pdf"] = "jpeg"
    full_page: bool = Field(False, alias="fullPage")

    @field_validator("format", mode="before")
    @classmethod
    def _lowercase_format(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.format]

    @property
    def filename(self) -> str:
        return f"render.{FILE_EXTENSIONS[self.format]}"

    def normalized(self) -> dict[str, Any]:
        """Canonical option set: every field present, quality dropped where the format ignores it."""
        return {
            "format": self.format,
            "full_page": self.full_page,
            "height": self.height,
            "quality": self.quality if self.format in LOSSY_FORMATS else None,
            "width": self.width,
        }


class RenderPayload(RenderOptions):
    """Inbound request body / query parameters for the image endpoints."""

    content: str | None = None
    html: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> RenderPayload:
        document = self.content if self.content is not None else self.html
        if document is None and self.url is None:
            raise ValueError("either content or url is required")
        if document is not None and self.url is not None:
            raise ValueError("content and url are mutually exclusive")
        if document is not None and not document.strip():
            raise ValueError("content must not be empty")
        return self


@dataclass(frozen=True)
class RenderRequest:
    """Immutable render request: document source plus normalized options."""

    content: str
    options: RenderOptions = field(default_factory=RenderOptions)
    source: str = SOURCE_HTML

    @cached_property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.content, self.options, self.source)


def compute_fingerprint(content: str, options: RenderOptions, source: str = SOURCE_HTML) -> str:
    """
    Compute the deterministic fingerprint of a render request.

    The hash input is canonical JSON (sorted keys, compact separators) over the
    source kind, the SHA-256 of the content bytes and the normalized options, so
    key ordering and omitted defaulted fields never change the result.
    """
    canonical = json.dumps(
        {
            "content_sha256": hashlib.sha256(content.encode("utf-8")).hexdigest(),
            "options": options.normalized(),
            "source": source,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_render_request(data: Mapping[str, Any]) -> RenderRequest:
    """
    Validate raw request data and build a RenderRequest.

    Args:
        data: JSON body or query parameters.

    Returns:
        The immutable RenderRequest.

    Raises:
        ValidationError: If any field is missing, malformed or out of range.
    """
    try:
        payload = RenderPayload.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(_format_pydantic_errors(e)) from e

    options = RenderOptions(
        width=payload.width,
        height=payload.height,
        quality=payload.quality,
        format=payload.format,
        full_page=payload.full_page,
    )

    if payload.url is not None:
        parsed = urlparse(payload.url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValidationError("url must be an absolute http(s) URL")
        return RenderRequest(content=payload.url, options=options, source=SOURCE_URL)

    content = payload.content if payload.content is not None else payload.html
    if content is None:
        raise ValidationError("either content or url is required")
    if len(content.encode("utf-8")) > MAX_CONTENT_BYTES:
        raise ValidationError(f"content exceeds {MAX_CONTENT_BYTES} bytes")
    return RenderRequest(content=content, options=options, source=SOURCE_HTML)


def _format_pydantic_errors(error: PydanticValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = str(item.get("msg", "invalid value"))
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)

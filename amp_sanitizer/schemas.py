"""
Pydantic schemas defining the contracts between modules.

ValidationError: one markup deviation and how it was resolved
Source: who introduced the offending markup (plugin, theme, ...)
ValidatedURL: the persisted error set of one URL plus its environment
CacheEntry / CacheMissCounter: records kept in the response cache backend
PreparedResponse: the final product handed back to the host

Data flow through the pipeline:
  raw HTML → Document → sanitizers emit ValidationError → Document serialized
  → PreparedResponse (html, etag, validation_errors)
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Closed vocabularies ---

class ErrorCode(str, Enum):
    """Every kind of deviation a sanitizer can record."""
    DISALLOWED_TAG = "disallowed-tag"
    DISALLOWED_ATTRIBUTE = "disallowed-attribute"
    DISALLOWED_ATTRIBUTE_VALUE = "disallowed-attribute-value"
    DISALLOWED_PROCESSING_INSTRUCTION = "disallowed-processing-instruction"
    DISALLOWED_CSS_AT_RULE = "disallowed-css-at-rule"
    DISALLOWED_CSS_PROPERTY = "disallowed-css-property"
    DISALLOWED_CSS_IMPORTANT = "disallowed-css-important"
    DISALLOWED_CSS_SELECTOR = "disallowed-css-selector"
    CSS_SYNTAX_INVALID = "css-syntax-invalid"
    EXCESSIVE_CSS = "excessive-css"
    INVALID_LAYOUT = "invalid-layout"


class ErrorType(str, Enum):
    """Coarse grouping used by review screens."""
    HTML_ELEMENT = "html_element_error"
    HTML_ATTRIBUTE = "html_attribute_error"
    CSS = "css_error"
    JS = "js_error"


class SourceKind(str, Enum):
    PLUGIN = "plugin"
    THEME = "theme"
    CORE = "core"
    BLOCK = "block"
    HOOK = "hook"
    EMBED = "embed"


class ErrorStatus(str, Enum):
    """Review state of an error, as stored by the ValidationErrorStore."""
    NEW_ACCEPTED = "new-accepted"
    NEW_REJECTED = "new-rejected"
    ACK_ACCEPTED = "ack-accepted"
    ACK_REJECTED = "ack-rejected"


# --- Attribution ---

class Source(BaseModel):
    """A plugin/theme/hook responsible for a piece of markup."""
    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    name: str


class Frame(BaseModel):
    """
    One entry of the host's hook/render stack.

    Kept loose on purpose: hosts report whatever `type` strings they have,
    and the SourceAttributor decides which ones map onto a SourceKind.
    """
    type: str
    name: str = ""
    hook: Optional[str] = None


class SanitizationContext(BaseModel):
    """
    Explicit per-request context threaded through every sanitizer call.

    `frames` is ordered outermost first, the way a call stack grows.
    """
    url: Optional[str] = None
    frames: list[Frame] = Field(default_factory=list)

    def push(self, frame: Frame) -> "SanitizationContext":
        """Return a copy with one more (innermost) frame."""
        return self.model_copy(update={"frames": [*self.frames, frame]})


# --- Validation errors ---

class ValidationError(BaseModel):
    """
    A structured record of one deviation from the AMP grammar.

    For element errors `node_name` is the tag name and `node_attributes`
    its attributes.  For attribute errors `node_name` is the attribute,
    `node_attributes` holds just that attribute and `parent_name` is the
    element carrying it.  Only `sanitized` changes after creation: the
    sanitize policy finalizes it.
    """
    model_config = ConfigDict(validate_assignment=True)

    code: ErrorCode
    type: ErrorType = ErrorType.HTML_ELEMENT
    node_name: str
    node_attributes: dict[str, str] = Field(default_factory=dict)
    parent_name: Optional[str] = None
    sources: list[Source] = Field(default_factory=list)
    sanitized: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    def slug(self) -> str:
        """
        Stable identity of the error, independent of where it came from.

        Sources and the sanitize decision are excluded so that the same
        markup problem reported by two plugins shares one review status.
        """
        data = self.model_dump(mode="json", exclude={"sources", "sanitized"})
        encoded = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.md5(encoded.encode("utf-8")).hexdigest()


# --- Validation error store records ---

class EnvironmentFingerprint(BaseModel):
    """Active theme plus the active plugins with their versions."""
    theme: str = ""
    plugins: dict[str, str] = Field(default_factory=dict)


class ValidatedURL(BaseModel):
    url: str
    environment: EnvironmentFingerprint = Field(default_factory=EnvironmentFingerprint)
    errors: list[ValidationError] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ErrorReview(BaseModel):
    """An operator's decision about one error slug."""
    slug: str
    accepted: bool
    reviewed_at: datetime = Field(default_factory=_utcnow)


# --- Response cache records ---

class CacheEntry(BaseModel):
    fingerprint: str
    sanitized_html: str
    etag: str
    validation_errors: list[ValidationError] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class CacheMissCounter(BaseModel):
    """Distinct fingerprints that missed the cache for one URL, oldest first."""
    url: str
    miss_fingerprints: list[str] = Field(default_factory=list)
    last_seen: datetime = Field(default_factory=_utcnow)

    def add(self, fingerprint: str) -> bool:
        """Record a fingerprint; returns False when it was already known."""
        self.last_seen = _utcnow()
        if fingerprint in self.miss_fingerprints:
            return False
        self.miss_fingerprints.append(fingerprint)
        return True


# --- Pipeline output ---

class PipelineResult(BaseModel):
    """What one full (uncached) pass produced."""
    html: str
    validation_errors: list[ValidationError] = Field(default_factory=list)
    cacheable: bool = True   # False for pass-through and parse failures
    is_amp: bool = False


class PreparedResponse(BaseModel):
    """Final product handed back to the host."""
    html: str = ""
    etag: Optional[str] = None
    validation_errors: list[ValidationError] = Field(default_factory=list)
    not_modified: bool = False   # If-None-Match matched: send no body
    cache_hit: bool = False
    is_amp: bool = False

    @property
    def etag_header(self) -> Optional[str]:
        """ETag formatted as an HTTP header value (strong, quoted)."""
        if self.etag is None:
            return None
        return f'"{self.etag}"'

"""
Pipeline configuration.

Tunables such as the cache-miss threshold and the auto-sanitize-safe
error kinds are supplied here at construction time.  Values can come from code or from AMP_SANITIZER_*
environment variables; the CLI loads a .env file before reading them.
"""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field

from .schemas import ErrorCode


# Error kinds that can be stripped without changing what the page does.
# Anything else (scripts, event handlers, ...) needs a human decision.
DEFAULT_AUTO_SANITIZE_CODES = frozenset({
    ErrorCode.DISALLOWED_ATTRIBUTE,
    ErrorCode.DISALLOWED_ATTRIBUTE_VALUE,
    ErrorCode.DISALLOWED_PROCESSING_INSTRUCTION,
    ErrorCode.DISALLOWED_CSS_AT_RULE,
    ErrorCode.DISALLOWED_CSS_PROPERTY,
    ErrorCode.DISALLOWED_CSS_IMPORTANT,
    ErrorCode.DISALLOWED_CSS_SELECTOR,
    ErrorCode.CSS_SYNTAX_INVALID,
    ErrorCode.INVALID_LAYOUT,
})

ENV_PREFIX = "AMP_SANITIZER_"


class PipelineConfig(BaseModel):
    """Construction-time settings for AmpResponsePreparer."""

    # Distinct fingerprints one URL may produce before caching is disabled
    cache_miss_threshold: int = Field(default=20, ge=1)
    auto_sanitize_codes: frozenset[ErrorCode] = DEFAULT_AUTO_SANITIZE_CODES
    enable_response_caching: bool = True
    rules_path: Optional[str] = None
    cache_dir: Optional[str] = None          # None → in-memory backend
    add_noscript_fallback: bool = True
    log_level: int = logging.INFO

    def cache_options(self) -> dict:
        """Option values that change the sanitized output, for fingerprinting."""
        return {
            "add_noscript_fallback": self.add_noscript_fallback,
            "auto_sanitize_codes": sorted(code.value for code in self.auto_sanitize_codes),
        }

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """
        Build a config from AMP_SANITIZER_* environment variables.

        Unset variables keep their defaults; keyword overrides win over both.
        """
        values = {}

        threshold = os.getenv(f"{ENV_PREFIX}CACHE_MISS_THRESHOLD")
        if threshold:
            values["cache_miss_threshold"] = int(threshold)

        codes = os.getenv(f"{ENV_PREFIX}AUTO_SANITIZE_CODES")
        if codes:
            values["auto_sanitize_codes"] = frozenset(
                ErrorCode(code.strip()) for code in codes.split(",") if code.strip()
            )

        caching = os.getenv(f"{ENV_PREFIX}ENABLE_RESPONSE_CACHING")
        if caching:
            values["enable_response_caching"] = caching.strip().lower() in ("1", "true", "yes", "on")

        fallback = os.getenv(f"{ENV_PREFIX}ADD_NOSCRIPT_FALLBACK")
        if fallback:
            values["add_noscript_fallback"] = fallback.strip().lower() in ("1", "true", "yes", "on")

        for key in ("rules_path", "cache_dir"):
            value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
            if value:
                values[key] = value

        level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL")
        if level:
            values["log_level"] = logging.getLevelName(level.strip().upper())

        values.update(overrides)
        return cls(**values)

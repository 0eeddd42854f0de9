"""
Custom exceptions for the AMP sanitizer.

Error philosophy:
  - ParseError        → FAIL PASS: the document cannot be structurally completed;
                        the caller gets the original input back, verbatim.
  - RuleTableError    → FAIL HARD: no pipeline can be built without a rule table.
  - CacheBackendError → ABSORBED: the response cache treats it as a miss.
  - AttributionError  → ABSORBED: the frame is skipped, sources may end up empty.

Markup deviations are not exceptions at all. They are recorded as
ValidationError records (see schemas.py) and never interrupt a pass.
"""

from typing import Optional


class AmpSanitizerError(Exception):
    """Base exception for all AMP sanitizer errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- FAIL PASS: the response falls back to the unmodified input ---

class ParseError(AmpSanitizerError):
    """
    Raised when HTML cannot be turned into a Document.

    The orchestrator catches this and serves the input unmodified;
    partially parsed output is never served.
    """
    pass


# --- FAIL HARD: raised at construction time ---

class RuleTableError(AmpSanitizerError):
    """Raised when the rule table cannot be read or does not validate."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.path = path


# --- ABSORBED: logged, never surfaced to the caller ---

class CacheBackendError(AmpSanitizerError):
    """
    Raised by a cache backend when the store is unavailable.

    The response cache never lets this escape; it counts as a miss.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.operation = operation  # "get", "set" or "delete"


class AttributionError(AmpSanitizerError):
    """Raised when a frame cannot be mapped to a Source."""
    pass

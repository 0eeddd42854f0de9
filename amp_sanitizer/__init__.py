"""
AMP Sanitizer

Turns arbitrary HTML responses into valid AMP HTML.
- Document: tolerant parsing and byte-faithful serialization
- Sanitizers: ordered passes that rewrite or strip invalid markup
- Response cache: fingerprint-keyed memoization with ETags and a
  cache-miss circuit breaker

Public API surface:
  Orchestration: AmpResponsePreparer, sanitize_html, sanitize_html_file
  Building blocks: Document, RuleTable, SanitizerPipeline, ResponseCache,
                 ValidationErrorStore, SourceAttributor
  Policies: AutoAcceptKnownSafe, AllSanitized, AllKept, Custom, ReviewedPolicy
  Data models: ValidationError, PreparedResponse, SanitizationContext, Frame
  Error types: ParseError (pass fails), RuleTableError (fatal),
               CacheBackendError (absorbed)
"""

# --- Orchestration ---
from .main import AmpResponsePreparer, sanitize_html, sanitize_html_file
from .config import PipelineConfig

# --- Building blocks ---
from .document import Document, parse, serialize
from .rules import RuleTable
from .pipeline import SanitizerPipeline
from .response_cache import ResponseCache
from .validation_store import ValidationErrorStore
from .attribution import SourceAttributor
from .cache_backends import CacheBackend, InMemoryCacheBackend, FileCacheBackend

# --- Policies (strip-or-keep decision per error) ---
from .policy import SanitizePolicy, AutoAcceptKnownSafe, AllSanitized, AllKept, Custom, ReviewedPolicy

# --- Data models ---
from .schemas import (
    ErrorCode,
    ValidationError,
    PreparedResponse,
    SanitizationContext,
    Frame,
    Source,
    EnvironmentFingerprint,
)

# --- Exceptions ---
from .exceptions import AmpSanitizerError, ParseError, RuleTableError, CacheBackendError

__version__ = "0.1.0"
__all__ = [
    "AmpResponsePreparer",
    "sanitize_html",
    "sanitize_html_file",
    "PipelineConfig",
    "Document",
    "parse",
    "serialize",
    "RuleTable",
    "SanitizerPipeline",
    "ResponseCache",
    "ValidationErrorStore",
    "SourceAttributor",
    "CacheBackend",
    "InMemoryCacheBackend",
    "FileCacheBackend",
    "SanitizePolicy",
    "AutoAcceptKnownSafe",
    "AllSanitized",
    "AllKept",
    "Custom",
    "ReviewedPolicy",
    "ErrorCode",
    "ValidationError",
    "PreparedResponse",
    "SanitizationContext",
    "Frame",
    "Source",
    "EnvironmentFingerprint",
    "AmpSanitizerError",
    "ParseError",
    "RuleTableError",
    "CacheBackendError",
]

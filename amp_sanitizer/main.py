"""
Main orchestrator for the AMP sanitizer.

Coordinates the per-request flow:
  Response Cache → (miss) Document → SanitizerPipeline → serialize
                 → Validation Error Store
and guarantees the graduated failure behavior: a response is always
produced, and when the markup cannot be handled it is the input verbatim.
"""

import re
from pathlib import Path
from typing import Optional, Union

from .attribution import SourceAttributor
from .base_sanitizer import BaseSanitizer
from .cache_backends import CacheBackend, FileCacheBackend, InMemoryCacheBackend
from .config import PipelineConfig
from .document import Document, decode_html
from .exceptions import ParseError
from .logger import get_module_logger, setup_logger
from .pipeline import SanitizerPipeline
from .policy import AllSanitized, AutoAcceptKnownSafe, SanitizePolicy
from .response_cache import ResponseCache
from .rules import RuleTable
from .schemas import EnvironmentFingerprint, PipelineResult, PreparedResponse, SanitizationContext
from .validation_store import ValidationErrorStore

logger = get_module_logger("main")

# Only a doctype, comments and whitespace may come before <html>
_HTML_START = re.compile(r"(?:<!.*?>|\s)*<html(?=[\s>])", re.IGNORECASE | re.DOTALL)


def is_html_document(text: str) -> bool:
    """A full document, not JSON, a fragment or an empty redirect body."""
    return bool(_HTML_START.match(text))


class AmpResponsePreparer:
    """
    Turns a host's raw HTML response into AMP.

    Every collaborator can be injected; whatever is omitted is built from
    `config`:
      rule_table  → RuleTable.load(config.rules_path)
      policy      → AutoAcceptKnownSafe(config.auto_sanitize_codes)
      cache_backend → FileCacheBackend(config.cache_dir), or in-memory
      store       → ValidationErrorStore on the same backend
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        rule_table: Optional[RuleTable] = None,
        policy: Optional[SanitizePolicy] = None,
        cache_backend: Optional[CacheBackend] = None,
        store: Optional[ValidationErrorStore] = None,
        attributor: Optional[SourceAttributor] = None,
        sanitizers: Optional[list[BaseSanitizer]] = None,
        environment: Optional[EnvironmentFingerprint] = None,
        log_level: int = None
    ):
        if log_level is not None:
            setup_logger(level=log_level)

        self.config = config or PipelineConfig()
        self.rule_table = rule_table or RuleTable.load(self.config.rules_path)
        self.policy = policy or AutoAcceptKnownSafe(self.config.auto_sanitize_codes)
        self.environment = environment or EnvironmentFingerprint()

        if cache_backend is None:
            if self.config.cache_dir:
                cache_backend = FileCacheBackend(self.config.cache_dir)
            else:
                cache_backend = InMemoryCacheBackend()
        self.store = store or ValidationErrorStore(cache_backend)

        self.pipeline = SanitizerPipeline(
            self.rule_table,
            policy=self.policy,
            attributor=attributor,
            sanitizers=sanitizers,
            args={"add_noscript_fallback": self.config.add_noscript_fallback},
        )
        self.cache = ResponseCache(
            cache_backend,
            threshold=self.config.cache_miss_threshold,
            enabled=self.config.enable_response_caching,
            rule_version=self.rule_table.version,
        )

        logger.info(
            f"AmpResponsePreparer initialized (rules {self.rule_table.version}, "
            f"policy {self.policy.fingerprint()}, caching "
            f"{'on' if self.config.enable_response_caching else 'off'})"
        )

    def prepare_response(
        self,
        raw_html: Union[str, bytes],
        url: Optional[str] = None,
        context: Optional[SanitizationContext] = None,
        options: Optional[dict] = None,
        if_none_match: Optional[str] = None
    ) -> PreparedResponse:
        """
        Sanitize one response, using the cache when possible.

        Args:
            raw_html: The host's response body
            url: Page URL (keys the miss counter and the error store)
            context: Frames active while the markup was produced
            options: Extra host options that change the output
            if_none_match: The request's If-None-Match header

        Returns:
            PreparedResponse.  Non-HTML bodies come back unchanged without an
            ETag; `not_modified` means the client copy is current.
        """
        encoding = None
        if isinstance(raw_html, bytes):
            text, encoding = decode_html(raw_html)
        else:
            text = raw_html or ""

        if not is_html_document(text):
            logger.debug("Response is not an HTML document, passing through")
            return PreparedResponse(html=text)

        if context is None:
            context = SanitizationContext(url=url)
        url = url or context.url

        cache_options = {
            **self.config.cache_options(),
            **(options or {}),
            "policy": self.policy.fingerprint(),
        }

        response = self.cache.get_or_compute(
            url,
            text,
            cache_options,
            lambda: self._run(text, encoding, url, context),
            if_none_match=if_none_match,
        )

        if not response.not_modified:
            logger.info(
                f"Prepared {url or 'response'}: {len(response.validation_errors)} errors, "
                f"{'AMP' if response.is_amp else 'non-AMP'}"
                f"{' (cached)' if response.cache_hit else ''}"
            )
        return response

    def prepare_file(self, file_path: Union[str, Path], url: Optional[str] = None) -> PreparedResponse:
        """Prepare an HTML file (read as bytes so its declared charset is honored)."""
        file_path = Path(file_path)
        return self.prepare_response(file_path.read_bytes(), url=url or file_path.resolve().as_uri())

    def _run(
        self,
        text: str,
        encoding: Optional[str],
        url: Optional[str],
        context: SanitizationContext
    ) -> PipelineResult:
        # Input:  decoded response text
        # Output: PipelineResult; on any failure the input itself, marked
        #         uncacheable so a fixed pipeline gets another chance
        try:
            document = Document.from_html(text, encoding)
        except ParseError as e:
            logger.warning(f"Cannot parse {url or 'response'}, serving it unchanged: {e}")
            return PipelineResult(html=text, cacheable=False)

        try:
            errors = self.pipeline.run(document, context)
            html = document.serialize()
        except Exception:
            logger.exception(f"Sanitizer pipeline failed on {url or 'response'}, serving it unchanged")
            return PipelineResult(html=text, cacheable=False)

        if url:
            self._store_errors(url, errors)

        return PipelineResult(
            html=html,
            validation_errors=errors,
            is_amp=all(error.sanitized for error in errors),
        )

    def _store_errors(self, url: str, errors: list) -> None:
        try:
            self.store.store_validation_errors(url, errors, self.environment)
        except Exception as e:
            logger.warning(f"Could not store validation errors for {url}: {e}")


def sanitize_html(html: str, policy: Optional[SanitizePolicy] = None) -> str:
    """
    Convenience function: sanitize one document or fragment, no caching.

    Strips everything invalid unless another policy is given.  Fragments
    are completed into a full document.
    """
    preparer = AmpResponsePreparer(
        config=PipelineConfig(enable_response_caching=False),
        policy=policy or AllSanitized(),
    )
    return preparer._run(html, None, None, SanitizationContext()).html


def sanitize_html_file(file_path: Union[str, Path], policy: Optional[SanitizePolicy] = None) -> PreparedResponse:
    """Convenience function to sanitize an HTML file."""
    preparer = AmpResponsePreparer(
        config=PipelineConfig(enable_response_caching=False),
        policy=policy or AllSanitized(),
    )
    return preparer.prepare_file(file_path)

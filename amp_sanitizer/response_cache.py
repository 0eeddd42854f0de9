"""
Response cache with a cache-miss circuit breaker and ETag support.

A full sanitizer pass is expensive, so its result is cached under a
fingerprint of everything that determines the output: the raw HTML, the
output-affecting options and the rule table version.  The fingerprint is
also the ETag, so a conditional request is answered before any work.

Pages that embed per-request noise (nonces, timestamps) never hit the
cache and only fill it up.  Each URL therefore keeps a CacheMissCounter of
the distinct fingerprints it produced; once that counter is full, the next
new fingerprint trips the breaker: caching is disabled and the URL is
recorded for the operator.  Nothing resets the breaker automatically.

The backend is a collaborator that may fail.  Every backend error is
logged and treated as a miss; a failing cache never fails a response.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .cache_backends import CacheBackend, InMemoryCacheBackend
from .logger import get_module_logger
from .schemas import CacheEntry, CacheMissCounter, PipelineResult, PreparedResponse
from .url_normalizer import normalize_url

logger = get_module_logger("response_cache")

ENTRY_PREFIX = "amp-response-cache:"
COUNTER_PREFIX = "amp-cache-miss-counter:"
TRIPPED_PREFIX = "amp-cache-breaker:"
CACHE_MISS_URL_KEY = "amp-cache-miss-url"

DEFAULT_CACHE_MISS_THRESHOLD = 20


def etag_matches(if_none_match: Optional[str], etag: Optional[str]) -> bool:
    """
    Check an If-None-Match header value against our ETag.

    Accepts a comma-separated list, weak validators (W/"...") and `*`.
    Comparison is weak, as HTTP requires for If-None-Match.
    """
    if not if_none_match or not etag:
        return False

    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate[:2].upper() == "W/":
            candidate = candidate[2:].strip()
        if candidate.strip('"') == etag:
            return True
    return False


class ResponseCache:
    """
    Memoizes pipeline results and guards against unbounded cache growth.

    Args:
        backend: Key-value store (default: a fresh InMemoryCacheBackend)
        threshold: Distinct misses a URL may record before the breaker trips
        enabled: False disables caching entirely; ETags still work
        rule_version: Version of the rule table, part of every fingerprint
    """

    etag_matches = staticmethod(etag_matches)

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        threshold: int = DEFAULT_CACHE_MISS_THRESHOLD,
        enabled: bool = True,
        rule_version: str = ""
    ):
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1, got {threshold}")
        self.backend = backend if backend is not None else InMemoryCacheBackend()
        self.threshold = threshold
        self.enabled = enabled
        self.rule_version = rule_version
        # Trips survive here even when the backend refuses the write
        self._tripped_locally: set = set()

    def compute_fingerprint(self, raw_html: str, options: Optional[dict] = None) -> str:
        payload = json.dumps([raw_html, options or {}, self.rule_version], sort_keys=True, default=str)
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def get_or_compute(
        self,
        url: Optional[str],
        raw_html: str,
        options: Optional[dict],
        compute: Callable[[], PipelineResult],
        if_none_match: Optional[str] = None
    ) -> PreparedResponse:
        """
        Serve from cache or run `compute` and remember the result.

        Args:
            url: Page URL; None skips the miss bookkeeping
            raw_html: Exact input bytes (decoded) of the response
            options: Output-affecting options
            compute: Runs the full pipeline
            if_none_match: Client's If-None-Match header, if any

        Returns:
            PreparedResponse; `not_modified` is set (and `compute` is not
            called) when the client already holds this version
        """
        fingerprint = self.compute_fingerprint(raw_html, options)

        if etag_matches(if_none_match, fingerprint):
            logger.debug(f"ETag matched for {url or '<no url>'}: not modified")
            return PreparedResponse(etag=fingerprint, not_modified=True)

        key = normalize_url(url) if url else None

        if not self.enabled or self.is_tripped(key):
            return self._response(compute(), fingerprint)

        entry = self._load_entry(fingerprint)
        if entry is not None:
            logger.info(f"Cache hit for {url or '<no url>'} ({fingerprint[:8]})")
            return PreparedResponse(
                html=entry.sanitized_html,
                etag=entry.etag,
                validation_errors=entry.validation_errors,
                cache_hit=True,
                is_amp=all(error.sanitized for error in entry.validation_errors),
            )

        result = compute()
        if result.cacheable:
            self._record_miss(key, fingerprint, result)
        return self._response(result, fingerprint)

    def is_tripped(self, url: Optional[str] = None) -> bool:
        """Whether caching is currently disabled, globally or for `url`."""
        if self.exceeded_cache_miss_threshold():
            return True
        if url is None:
            return False
        key = normalize_url(url)
        if key in self._tripped_locally:
            return True
        return self._backend_get(TRIPPED_PREFIX + key) is not None

    def exceeded_cache_miss_threshold(self) -> bool:
        """Whether the breaker has disabled response caching."""
        if self._tripped_locally:
            return True
        return self._backend_get(CACHE_MISS_URL_KEY) is not None

    def get_cache_miss_url(self) -> Optional[str]:
        """URL that tripped the breaker, for the operator notice."""
        record = self._backend_get(CACHE_MISS_URL_KEY)
        if isinstance(record, dict):
            return record.get("url")
        if self._tripped_locally:
            return sorted(self._tripped_locally)[0]
        return None

    def reset_breaker(self, url: Optional[str] = None) -> None:
        """
        Re-enable caching after the operator fixed the offending page.

        With a URL only that URL's counter and flag are cleared (plus the
        global flag if that URL set it); without one, every counter and flag.
        """
        if url is None:
            self._tripped_locally.clear()
            for prefix in (COUNTER_PREFIX, TRIPPED_PREFIX):
                self._backend_call("clear", prefix)
            self._backend_call("delete", CACHE_MISS_URL_KEY)
            logger.info("Cache-miss breaker reset for all URLs")
            return

        key = normalize_url(url)
        self._tripped_locally.discard(key)
        self._backend_call("delete", COUNTER_PREFIX + key)
        self._backend_call("delete", TRIPPED_PREFIX + key)
        if self.get_cache_miss_url() == key:
            self._backend_call("delete", CACHE_MISS_URL_KEY)
        logger.info(f"Cache-miss breaker reset for {key}")

    def invalidate(self) -> int:
        """Drop every cached response (counters and breaker state stay)."""
        return self._backend_call("clear", ENTRY_PREFIX) or 0

    # --- internals ---

    @staticmethod
    def _response(result: PipelineResult, fingerprint: str) -> PreparedResponse:
        return PreparedResponse(
            html=result.html,
            etag=fingerprint,
            validation_errors=result.validation_errors,
            is_amp=result.is_amp,
        )

    def _record_miss(self, key: Optional[str], fingerprint: str, result: PipelineResult) -> None:
        if key is not None:
            counter = self._load_counter(key)
            known = fingerprint in counter.miss_fingerprints
            if not known and len(counter.miss_fingerprints) >= self.threshold:
                self._trip(key, counter)
                return
            counter.add(fingerprint)
            self._backend_call("set", COUNTER_PREFIX + key, counter.model_dump(mode="json"))

        entry = CacheEntry(
            fingerprint=fingerprint,
            sanitized_html=result.html,
            etag=fingerprint,
            validation_errors=result.validation_errors,
        )
        self._backend_call("set", ENTRY_PREFIX + fingerprint, entry.model_dump(mode="json"))

    def _trip(self, key: str, counter: CacheMissCounter) -> None:
        logger.warning(
            f"Cache-miss threshold exceeded for {key}: {len(counter.miss_fingerprints)} distinct "
            f"responses; response caching disabled until the breaker is reset"
        )
        self._tripped_locally.add(key)
        record = {"url": key, "tripped_at": datetime.now(timezone.utc).isoformat()}
        self._backend_call("set", TRIPPED_PREFIX + key, record)
        self._backend_call("set", CACHE_MISS_URL_KEY, record)

    def _load_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        data = self._backend_get(ENTRY_PREFIX + fingerprint)
        if data is None:
            return None
        try:
            return CacheEntry.model_validate(data)
        except ValueError as e:
            logger.warning(f"Discarding corrupt cache entry {fingerprint[:8]}: {e}")
            return None

    def _load_counter(self, key: str) -> CacheMissCounter:
        data = self._backend_get(COUNTER_PREFIX + key)
        if data is not None:
            try:
                return CacheMissCounter.model_validate(data)
            except ValueError as e:
                logger.warning(f"Discarding corrupt miss counter for {key}: {e}")
        return CacheMissCounter(url=key)

    def _backend_get(self, key: str) -> Any:
        return self._backend_call("get", key)

    def _backend_call(self, operation: str, *args) -> Any:
        try:
            return getattr(self.backend, operation)(*args)
        except Exception as e:
            logger.warning(f"Cache backend {operation} failed, continuing without cache: {e}")
            return None

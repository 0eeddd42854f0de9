"""
Validation Error Store.

Persists, per URL, the errors of the latest pass together with the
environment (theme and plugin versions) that produced them, so stale
results can be spotted after the site changes.  Operator reviews of
individual errors are stored by error slug and shared across URLs.

Keys in the backend:
  validated-url:<normalized url>      → ValidatedURL
  validated-url-index                 → [normalized url, ...]
  validation-error-reviews            → {slug: ErrorReview}

Writes replace the whole record of a URL; a later pass fully overwrites a
partial one, so no atomicity across errors is needed.
"""

from typing import Optional

from .cache_backends import CacheBackend, InMemoryCacheBackend
from .logger import get_module_logger
from .schemas import EnvironmentFingerprint, ErrorReview, ErrorStatus, ValidatedURL, ValidationError
from .url_normalizer import normalize_url

logger = get_module_logger("validation_store")

URL_PREFIX = "validated-url:"
URL_INDEX_KEY = "validated-url-index"
REVIEWS_KEY = "validation-error-reviews"


class ValidationErrorStore:
    """
    Document-store-like record of validation results.

    Unlike the response cache, backend failures here propagate so an
    operator asking for results sees them.  On the response path the
    AmpResponsePreparer absorbs them.
    """

    def __init__(self, backend: Optional[CacheBackend] = None):
        self.backend = backend if backend is not None else InMemoryCacheBackend()

    # --- per-URL records ---

    def store_validation_errors(
        self,
        url: str,
        errors: list[ValidationError],
        environment: Optional[EnvironmentFingerprint] = None
    ) -> ValidatedURL:
        """
        Replace the error set recorded for `url`.

        The creation time of an existing record is kept; everything else is
        overwritten.
        """
        key = normalize_url(url)
        existing = self.get(key)
        record = ValidatedURL(
            url=key,
            environment=environment or EnvironmentFingerprint(),
            errors=list(errors),
        )
        if existing is not None:
            record.created_at = existing.created_at

        self.backend.set(URL_PREFIX + key, record.model_dump(mode="json"))
        self._add_to_index(key)

        logger.debug(f"Stored {len(record.errors)} validation errors for {key}")
        return record

    def get(self, url: str) -> Optional[ValidatedURL]:
        data = self.backend.get(URL_PREFIX + normalize_url(url))
        if data is None:
            return None
        return ValidatedURL.model_validate(data)

    def delete(self, url: str) -> bool:
        key = normalize_url(url)
        existed = self.backend.delete(URL_PREFIX + key)
        index = self._index()
        if key in index:
            index.remove(key)
            self.backend.set(URL_INDEX_KEY, index)
        return existed

    def list_urls(self) -> list[str]:
        return list(self._index())

    def get_staleness(self, url: str, environment: EnvironmentFingerprint) -> dict:
        """
        Compare the environment a record was made in with the current one.

        Returns:
            {} when fresh (or nothing is stored).  Otherwise:
              "theme": the theme the record was made with, if it changed
              "plugins": {"new": [...], "old": [...]} slugs activated or
                         deactivated since; a version change lists the
                         slug in both
        """
        record = self.get(url)
        if record is None:
            return {}

        staleness = {}
        old = record.environment

        if old.theme != environment.theme:
            staleness["theme"] = old.theme

        new_plugins = sorted(
            slug for slug, version in environment.plugins.items()
            if old.plugins.get(slug) != version
        )
        old_plugins = sorted(
            slug for slug, version in old.plugins.items()
            if environment.plugins.get(slug) != version
        )
        if new_plugins or old_plugins:
            staleness["plugins"] = {"new": new_plugins, "old": old_plugins}

        return staleness

    # --- reviews ---

    def review(self, error: ValidationError, accepted: bool) -> ErrorReview:
        """Record an operator decision for every occurrence of `error`."""
        review = ErrorReview(slug=error.slug(), accepted=accepted)
        reviews = self._reviews()
        reviews[review.slug] = review.model_dump(mode="json")
        self.backend.set(REVIEWS_KEY, reviews)
        logger.info(
            f"Error {review.slug[:8]} ({error.code.value} <{error.node_name}>) "
            f"marked {'accepted' if accepted else 'rejected'}"
        )
        return review

    def get_review(self, slug: str) -> Optional[ErrorReview]:
        data = self._reviews().get(slug)
        if data is None:
            return None
        return ErrorReview.model_validate(data)

    def list_reviews(self) -> list[ErrorReview]:
        return [ErrorReview.model_validate(data) for data in self._reviews().values()]

    def clear_review(self, error: ValidationError) -> bool:
        reviews = self._reviews()
        if reviews.pop(error.slug(), None) is None:
            return False
        self.backend.set(REVIEWS_KEY, reviews)
        return True

    def get_error_status(self, error: ValidationError, fallback_policy=None) -> ErrorStatus:
        """
        Review status of an error.

        Reviewed errors are ack-accepted/ack-rejected.  For new errors the
        `fallback_policy` decides (default: the `sanitized` flag the error
        was recorded with).
        """
        review = self.get_review(error.slug())
        if review is not None:
            return ErrorStatus.ACK_ACCEPTED if review.accepted else ErrorStatus.ACK_REJECTED

        accepted = fallback_policy.decide(error) if fallback_policy is not None else error.sanitized
        return ErrorStatus.NEW_ACCEPTED if accepted else ErrorStatus.NEW_REJECTED

    # --- index ---

    def _index(self) -> list[str]:
        return list(self.backend.get(URL_INDEX_KEY) or [])

    def _add_to_index(self, key: str) -> None:
        index = self._index()
        if key not in index:
            index.append(key)
            self.backend.set(URL_INDEX_KEY, index)

    def _reviews(self) -> dict:
        # slug → ErrorReview data, one record for all reviews
        return dict(self.backend.get(REVIEWS_KEY) or {})

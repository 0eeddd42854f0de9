"""
Sanitize policies: strip the offending markup, or keep it and serve non-AMP.

A policy only decides; it never touches the tree.  Whatever it decides, the
ValidationError is still recorded.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional

from .config import DEFAULT_AUTO_SANITIZE_CODES
from .schemas import ErrorCode, ValidationError


class SanitizePolicy(ABC):
    """Decides `sanitized` for each ValidationError."""

    @abstractmethod
    def decide(self, error: ValidationError) -> bool:
        """True to strip the markup, False to keep it."""

    @abstractmethod
    def fingerprint(self) -> str:
        """
        Stable description of the decisions this policy makes.

        Part of the response-cache key: a different policy produces different
        output for the same input.
        """


class AutoAcceptKnownSafe(SanitizePolicy):
    """Strip the error kinds known to be safe; keep everything else for review."""

    def __init__(self, codes: Optional[Iterable[ErrorCode]] = None):
        self.codes = frozenset(DEFAULT_AUTO_SANITIZE_CODES if codes is None else codes)

    def decide(self, error: ValidationError) -> bool:
        return error.code in self.codes

    def fingerprint(self) -> str:
        return "auto:" + ",".join(sorted(code.value for code in self.codes))


class AllSanitized(SanitizePolicy):
    def decide(self, error: ValidationError) -> bool:
        return True

    def fingerprint(self) -> str:
        return "all-sanitized"


class AllKept(SanitizePolicy):
    def decide(self, error: ValidationError) -> bool:
        return False

    def fingerprint(self) -> str:
        return "all-kept"


class Custom(SanitizePolicy):
    """
    Wraps a plain callable.

    The callable's behavior cannot be inspected, so callers should pass a
    `key` that changes whenever the callable's decisions do; otherwise the
    qualified name of the function is used.
    """

    def __init__(self, fn: Callable[[ValidationError], bool], key: Optional[str] = None):
        self.fn = fn
        self.key = key or getattr(fn, "__qualname__", repr(fn))

    def decide(self, error: ValidationError) -> bool:
        return bool(self.fn(error))

    def fingerprint(self) -> str:
        return f"custom:{self.key}"


class ReviewedPolicy(SanitizePolicy):
    """
    Follows operator reviews recorded in a ValidationErrorStore.

    Errors nobody has reviewed yet are decided by `fallback`.
    """

    def __init__(self, store, fallback: Optional[SanitizePolicy] = None):
        self.store = store
        self.fallback = fallback or AutoAcceptKnownSafe()

    def decide(self, error: ValidationError) -> bool:
        review = self.store.get_review(error.slug())
        if review is not None:
            return review.accepted
        return self.fallback.decide(error)

    def fingerprint(self) -> str:
        # Reviews change over time, so they are part of the key
        reviews = self.store.list_reviews()
        digest = hashlib.md5(
            "|".join(f"{r.slug}:{int(r.accepted)}" for r in sorted(reviews, key=lambda r: r.slug)).encode("utf-8")
        ).hexdigest()
        return f"reviewed:{digest}:{self.fallback.fingerprint()}"

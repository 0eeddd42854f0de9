#!/usr/bin/env python3
"""
Tests for the validation error store, operator reviews, the cache backends
and URL normalization.
"""

from pathlib import Path

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from amp_sanitizer.cache_backends import FileCacheBackend, InMemoryCacheBackend
from amp_sanitizer.exceptions import CacheBackendError
from amp_sanitizer.policy import AllKept, AllSanitized, ReviewedPolicy
from amp_sanitizer.schemas import (
    EnvironmentFingerprint,
    ErrorCode,
    ErrorStatus,
    Source,
    SourceKind,
    ValidationError,
)
from amp_sanitizer.url_normalizer import normalize_url
from amp_sanitizer.validation_store import ValidationErrorStore


def script_error(**overrides):
    values = {"code": ErrorCode.DISALLOWED_TAG, "node_name": "script", "parent_name": "body"}
    values.update(overrides)
    return ValidationError(**values)


@pytest.fixture
def store():
    return ValidationErrorStore(InMemoryCacheBackend())


class TestNormalizeUrl:

    @pytest.mark.parametrize("url,expected", [
        ("HTTP://Example.COM:80/a/b/?z=1&a=2#frag", "http://example.com/a/b?a=2&z=1"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com:443/", "https://example.com/"),
        ("https://example.com:8443/", "https://example.com:8443/"),
        ("https://example.com/?b=&a=1", "https://example.com/?a=1&b="),
        ("https://user:pw@Example.com/x", "https://user:pw@example.com/x"),
        ("  https://example.com/page/  ", "https://example.com/page"),
    ])
    def test_canonical_form(self, url, expected):
        assert normalize_url(url) == expected

    def test_unparseable_input_is_returned_stripped(self):
        assert normalize_url(" http://[::1 ") == "http://[::1"
        assert normalize_url("") == ""


class TestValidationErrorStore:

    def test_store_and_get(self, store):
        errors = [script_error(), script_error(node_name="object")]
        store.store_validation_errors("https://example.com/post/", errors)

        record = store.get("https://EXAMPLE.com/post")
        assert record.url == "https://example.com/post"
        assert [e.node_name for e in record.errors] == ["script", "object"]

    def test_missing_url(self, store):
        assert store.get("https://example.com/none") is None

    def test_second_pass_replaces_errors_keeps_created_at(self, store):
        first = store.store_validation_errors("https://example.com/", [script_error()])
        second = store.store_validation_errors("https://example.com/", [])
        assert second.created_at == first.created_at
        assert store.get("https://example.com/").errors == []

    def test_index(self, store):
        store.store_validation_errors("https://example.com/a", [])
        store.store_validation_errors("https://example.com/b", [])
        store.store_validation_errors("https://example.com/a/", [])
        assert store.list_urls() == ["https://example.com/a", "https://example.com/b"]

        assert store.delete("https://example.com/a")
        assert not store.delete("https://example.com/a")
        assert store.list_urls() == ["https://example.com/b"]

    def test_staleness(self, store):
        stored = EnvironmentFingerprint(theme="classic", plugins={"gallery": "1.0", "forms": "2.0"})
        store.store_validation_errors("https://example.com/", [], stored)

        assert store.get_staleness("https://example.com/", stored) == {}

        current = EnvironmentFingerprint(theme="modern", plugins={"gallery": "1.1", "seo": "3.0"})
        assert store.get_staleness("https://example.com/", current) == {
            "theme": "classic",
            "plugins": {"new": ["gallery", "seo"], "old": ["forms", "gallery"]},
        }

    def test_staleness_of_unknown_url(self, store):
        assert store.get_staleness("https://example.com/x", EnvironmentFingerprint(theme="t")) == {}


class TestReviews:

    def test_new_error_status_follows_recorded_decision(self, store):
        assert store.get_error_status(script_error()) is ErrorStatus.NEW_REJECTED
        assert store.get_error_status(script_error(sanitized=True)) is ErrorStatus.NEW_ACCEPTED
        assert store.get_error_status(script_error(), AllSanitized()) is ErrorStatus.NEW_ACCEPTED

    def test_review_is_shared_across_sources(self, store):
        store.review(script_error(), accepted=True)
        from_plugin = script_error(sources=[Source(kind=SourceKind.PLUGIN, name="gallery")])
        assert store.get_error_status(from_plugin) is ErrorStatus.ACK_ACCEPTED

    def test_rejected_review(self, store):
        store.review(script_error(), accepted=False)
        assert store.get_error_status(script_error(), AllSanitized()) is ErrorStatus.ACK_REJECTED

    def test_clear_review(self, store):
        error = script_error()
        store.review(error, accepted=True)
        assert [r.slug for r in store.list_reviews()] == [error.slug()]
        assert store.clear_review(error)
        assert store.get_error_status(error) is ErrorStatus.NEW_REJECTED
        assert store.list_reviews() == []

    def test_slug_depends_on_markup_only(self):
        assert script_error().slug() == script_error(sanitized=True).slug()
        assert script_error().slug() != script_error(node_name="object").slug()


class TestReviewedPolicy:

    def test_reviews_override_fallback(self, store):
        policy = ReviewedPolicy(store, fallback=AllKept())
        error = script_error()
        assert policy.decide(error) is False

        store.review(error, accepted=True)
        assert policy.decide(error) is True
        assert policy.decide(script_error(node_name="object")) is False

    def test_fingerprint_changes_with_reviews(self, store):
        policy = ReviewedPolicy(store)
        before = policy.fingerprint()
        store.review(script_error(), accepted=True)
        assert policy.fingerprint() != before
        assert policy.fingerprint().startswith("reviewed:")

    def test_fingerprint_does_not_scan_the_backend(self):
        class NoScanBackend(InMemoryCacheBackend):
            def keys(self, prefix=""):
                raise AssertionError(f"backend scanned for {prefix!r}")

        store = ValidationErrorStore(NoScanBackend())
        for name in ("script", "object", "embed"):
            store.review(script_error(node_name=name), accepted=True)
        store.store_validation_errors("https://example.com/", [script_error()])

        policy = ReviewedPolicy(store)
        assert policy.fingerprint() == ReviewedPolicy(store).fingerprint()
        assert len(store.list_reviews()) == 3
        assert store.clear_review(script_error(node_name="embed"))
        assert not store.clear_review(script_error(node_name="embed"))
        assert len(store.list_reviews()) == 2


class TestBackends:

    def test_in_memory_values_are_copies(self):
        backend = InMemoryCacheBackend()
        value = {"list": [1]}
        backend.set("k", value)
        value["list"].append(2)
        assert backend.get("k") == {"list": [1]}

    def test_in_memory_rejects_unserializable(self):
        with pytest.raises(CacheBackendError) as exc_info:
            InMemoryCacheBackend().set("k", object())
        assert exc_info.value.operation == "set"

    def test_file_backend(self, tmp_path):
        backend = FileCacheBackend(str(tmp_path / "cache"))
        backend.set("amp:https://example.com/", {"a": 1})
        backend.set("amp:https://example.com/b", [1, 2])
        backend.set("other", "x")

        assert backend.get("amp:https://example.com/") == {"a": 1}
        assert backend.keys("amp:") == ["amp:https://example.com/", "amp:https://example.com/b"]
        assert backend.delete("other")
        assert backend.get("other") is None
        assert backend.clear("amp:") == 2
        assert backend.keys() == []

    def test_file_backend_corrupt_file(self, tmp_path):
        backend = FileCacheBackend(str(tmp_path))
        backend.set("k", 1)
        backend._path("k").write_text("{not json", encoding="utf-8")

        with pytest.raises(CacheBackendError):
            backend.get("k")
        assert backend.keys() == []

    def test_store_persists_across_instances(self, tmp_path):
        ValidationErrorStore(FileCacheBackend(str(tmp_path))).store_validation_errors(
            "https://example.com/", [script_error()]
        )
        record = ValidationErrorStore(FileCacheBackend(str(tmp_path))).get("https://example.com/")
        assert record.errors[0].code is ErrorCode.DISALLOWED_TAG

#!/usr/bin/env python3
"""
End-to-end tests for the sanitizer pipeline, the convenience functions,
configuration and the CLI.
"""

import json
import logging
from pathlib import Path

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

import pytest

import run_sanitizer
from amp_sanitizer import sanitize_html, sanitize_html_file
from amp_sanitizer.config import DEFAULT_AUTO_SANITIZE_CODES, PipelineConfig
from amp_sanitizer.document import Document
from amp_sanitizer.exceptions import RuleTableError
from amp_sanitizer.logger import setup_logger
from amp_sanitizer.pipeline import SanitizerPipeline, mark_amp
from amp_sanitizer.policy import AllKept, AllSanitized, AutoAcceptKnownSafe, Custom
from amp_sanitizer.rules import RuleTable
from amp_sanitizer.schemas import ErrorCode, ValidationError

RULES = RuleTable.load()

MESSY_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta http-equiv="Content-Type" content="text/html; charset=iso-8859-1">
<title>Messy</title>
<link rel="stylesheet" href="https://example.com/site.css">
<style>.hero{color:red !important} @import url(x.css);</style>
<script src="https://example.com/tracker.js"></script>
</head>
<body onload="init()">
<p>Intro <blink>now</blink></p>
<img src="http://example.com/a.jpg" width="300" height="200" alt="A">
<iframe src="https://example.com/embed"></iframe>
<div style="margin:0;behavior:url(x.htc)" [class]="state.cls">text</div>
<form action="/search"><input type="text" name="q"></form>
<script>document.write("<p>hi</p>")</script>
</body>
</html>
"""


def run(html, policy=None):
    document = Document.from_html(html)
    errors = SanitizerPipeline(RULES, policy=policy).run(document)
    return document, errors


def test_disallowed_script_is_stripped():
    document, errors = run("<div><script>bad()</script><p>ok</p></div>", AllSanitized())

    assert len(errors) == 1
    error = errors[0]
    assert error.code is ErrorCode.DISALLOWED_TAG
    assert error.node_name == "script"
    assert error.parent_name == "div"
    assert error.sanitized

    html = document.serialize()
    assert "<body><div><p>ok</p></div></body>" in html
    assert document.html.has_attr("amp")


def test_default_policy_keeps_script_and_unflags_amp():
    document, errors = run("<html amp><head></head><body><div><script>bad()</script></div></body></html>")
    assert [(e.node_name, e.sanitized) for e in errors] == [("script", False)]
    assert "<script>bad()</script>" in document.serialize()
    assert not document.html.has_attr("amp")


def test_errors_follow_document_order_then_pipeline_order():
    _, errors = run(
        '<div onclick="a()" style="color:red!important">x</div>'
        "<blink>y</blink>"
        "<style>p{color:red}@import url(x.css);</style>",
        AllSanitized()
    )
    assert [e.code for e in errors] == [
        ErrorCode.DISALLOWED_CSS_IMPORTANT,   # style sanitizer runs first on the same <div>
        ErrorCode.DISALLOWED_ATTRIBUTE,
        ErrorCode.DISALLOWED_TAG,
        ErrorCode.DISALLOWED_CSS_AT_RULE,
    ]


def test_messy_page_becomes_valid_and_stays_valid():
    first, errors = run(MESSY_PAGE, AllSanitized())
    assert errors
    assert all(error.sanitized for error in errors)
    html = first.serialize()

    assert html.startswith("<!DOCTYPE html>")
    assert "<html lang=\"en\" amp=\"\">" in html
    assert "iso-8859-1" not in html
    assert "tracker.js" not in html
    assert "onload" not in html
    assert '<amp-img src="http://example.com/a.jpg" width="300" height="200" alt="A" layout="intrinsic">' in html
    assert '[class]="state.cls"' in html
    assert 'style="margin:0"' in html

    # Sanitizing the output again changes nothing and finds nothing
    second, again = run(html, AllSanitized())
    assert again == []
    assert second.serialize() == html


def test_kept_errors_do_not_grow_on_rerun():
    first, errors = run(MESSY_PAGE)
    second, again = run(first.serialize())
    assert {e.slug() for e in again} <= {e.slug() for e in errors}
    assert not any(e.sanitized for e in again)


def test_custom_policy():
    policy = Custom(lambda error: error.node_name != "object", key="keep-objects")
    document, errors = run("<p onclick='x()'>a</p><object data='x'></object>", policy)
    assert [(e.node_name, e.sanitized) for e in errors] == [("onclick", True), ("object", False)]
    assert document.body.find("object") is not None
    assert policy.fingerprint() == "custom:keep-objects"


def test_policy_fingerprints_differ():
    fingerprints = {
        AllSanitized().fingerprint(),
        AllKept().fingerprint(),
        AutoAcceptKnownSafe().fingerprint(),
        AutoAcceptKnownSafe([ErrorCode.DISALLOWED_TAG]).fingerprint(),
    }
    assert len(fingerprints) == 4


def test_mark_amp():
    document = Document.from_html("<html ⚡><head></head><body></body></html>")
    assert mark_amp(document, [])
    assert not document.html.has_attr("amp")

    kept = ValidationError(code=ErrorCode.DISALLOWED_TAG, node_name="script", sanitized=False)
    assert not mark_amp(document, [kept])
    assert not document.html.has_attr("⚡")


class TestConvenienceFunctions:

    def test_sanitize_html_fragment(self):
        html = sanitize_html("<div><script>bad()</script><p>ok</p></div>")
        assert "<div><p>ok</p></div>" in html
        assert '<script async="" src="https://cdn.ampproject.org/v0.js"></script>' in html

    def test_sanitize_html_with_kept_errors(self):
        html = sanitize_html("<div><script>bad()</script></div>", policy=AllKept())
        assert "bad()" in html
        assert "<html amp" not in html

    def test_sanitize_html_file(self, tmp_path):
        path = tmp_path / "page.html"
        path.write_bytes(MESSY_PAGE.encode("latin-1"))
        response = sanitize_html_file(path)
        assert response.is_amp
        assert response.etag
        assert "<amp-img" in response.html


class TestConfig:

    def test_defaults(self):
        config = PipelineConfig()
        assert config.cache_miss_threshold == 20
        assert config.auto_sanitize_codes == DEFAULT_AUTO_SANITIZE_CODES
        assert ErrorCode.DISALLOWED_TAG not in config.auto_sanitize_codes
        assert ErrorCode.EXCESSIVE_CSS not in config.auto_sanitize_codes

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AMP_SANITIZER_CACHE_MISS_THRESHOLD", "5")
        monkeypatch.setenv("AMP_SANITIZER_AUTO_SANITIZE_CODES", "disallowed-tag, invalid-layout")
        monkeypatch.setenv("AMP_SANITIZER_ENABLE_RESPONSE_CACHING", "no")
        monkeypatch.setenv("AMP_SANITIZER_LOG_LEVEL", "debug")

        config = PipelineConfig.from_env(add_noscript_fallback=False)
        assert config.cache_miss_threshold == 5
        assert config.auto_sanitize_codes == {ErrorCode.DISALLOWED_TAG, ErrorCode.INVALID_LAYOUT}
        assert config.enable_response_caching is False
        assert config.log_level == logging.DEBUG
        assert config.add_noscript_fallback is False

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            PipelineConfig(cache_miss_threshold=0)

    def test_cache_options_track_output_settings(self):
        assert PipelineConfig().cache_options() != PipelineConfig(add_noscript_fallback=False).cache_options()

    def test_missing_rule_table(self, tmp_path):
        with pytest.raises(RuleTableError) as exc_info:
            RuleTable.load(str(tmp_path / "missing.json"))
        assert exc_info.value.path.endswith("missing.json")

    def test_invalid_rule_table(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"tags": {}}), encoding="utf-8")
        with pytest.raises(RuleTableError):
            RuleTable.load(str(path))


def test_repeated_logger_setup_does_not_duplicate_handlers(tmp_path):
    log_file = tmp_path / "sanitizer.log"
    logger = setup_logger("amp_sanitizer.repeat_setup", level=logging.INFO, log_file=str(log_file))
    try:
        setup_logger("amp_sanitizer.repeat_setup", level=logging.DEBUG, log_file=str(log_file))
        assert len(logger.handlers) == 2
        assert logger.level == logging.DEBUG
        assert all(handler.level == logging.DEBUG for handler in logger.handlers)

        logger.debug("dropped <blink>")
        for handler in logger.handlers:
            handler.flush()
        assert log_file.read_text(encoding="utf-8").count("dropped <blink>") == 1
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


def test_cli_writes_output_and_errors(tmp_path, monkeypatch):
    source = tmp_path / "page.html"
    source.write_text(MESSY_PAGE, encoding="utf-8")
    out_dir = tmp_path / "out"
    errors_path = tmp_path / "errors.json"

    monkeypatch.setattr(sys, "argv", [
        "run_sanitizer.py", str(source), "-o", str(out_dir), "--errors-json", str(errors_path)
    ])
    run_sanitizer.main()

    assert "<amp-img" in (out_dir / "page.html").read_text(encoding="utf-8")
    results = json.loads(errors_path.read_text(encoding="utf-8"))
    assert results[0]["file"] == "page.html"
    assert results[0]["status"] == "amp"
    assert results[0]["errors"]


def test_cli_missing_file_exits_nonzero(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["run_sanitizer.py", str(tmp_path / "nope.html")])
    with pytest.raises(SystemExit) as exc_info:
        run_sanitizer.main()
    assert exc_info.value.code == 1

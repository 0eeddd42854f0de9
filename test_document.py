#!/usr/bin/env python3
"""
Tests for the Document model: structural completion, normalization and
byte-faithful serialization.
"""

from pathlib import Path

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

import pytest
from bs4 import Comment

from amp_sanitizer.document import Document, detect_charset, parse, serialize, text_content
from amp_sanitizer.exceptions import ParseError


# Already in canonical form: a UTF-8 charset meta first in <head> and the
# newline the tree writer puts after the doctype.
QUIRKY_DOCUMENT = (
    '<!DOCTYPE html>\n'
    '<html amp="" lang="en"><head><meta charset="utf-8"><title>Quirks</title></head>'
    '<body>'
    '<amp-state id="s"><script type="application/json">{"x": 1}</script></amp-state>'
    '<p [text]="s.x" class="b a" data-z="1">hi</p>'
    '<br><img src="a.png" alt=""><input type="text" name="q">'
    '<template type="amp-mustache"><a href="{{url}}" title="{{{raw}}}">{{name}}</a></template>'
    '</body></html>\n'
)


class TestRoundTrip:
    """serialize(parse(html)) for markup that needs no sanitization."""

    def test_quirky_document_is_byte_identical(self):
        assert serialize(parse(QUIRKY_DOCUMENT)) == QUIRKY_DOCUMENT

    def test_serialization_is_idempotent(self):
        first = serialize(parse("<p [hidden]=\"x\">a<br/>b</p><img src=x.png>"))
        assert serialize(parse(first)) == first

    def test_attribute_order_is_preserved(self):
        html = serialize(parse('<div z="1" a="2" m="3"></div>'))
        assert '<div z="1" a="2" m="3"></div>' in html

    def test_bind_attributes_come_back_bracketed(self):
        document = parse('<p [text]="s.x">hi</p>')
        assert document.body.p.has_attr("data-amp-bind-text")
        assert '<p [text]="s.x">hi</p>' in document.serialize()

    def test_template_literals_are_untouched(self):
        html = serialize(parse(
            '<template type="amp-mustache"><a href="{{url}}" data-x="{{#a}}&{{/a}}">x</a></template>'
        ))
        assert 'href="{{url}}"' in html
        assert "{{#a}}" in html and "{{/a}}" in html
        assert "_amp_mustache_" not in html

    def test_self_closing_void_tags_are_written_as_open_tags(self):
        html = serialize(parse("<p>a<br/>b</p>"))
        assert "<p>a<br>b</p>" in html
        assert "</br>" not in html


class TestStructure:

    def test_fragment_gets_full_structure(self):
        html = serialize(parse("<p>hi</p>"))
        assert html.startswith("<!DOCTYPE html>")
        assert '<html><head><meta charset="utf-8"></head><body><p>hi</p></body></html>' in html

    def test_single_head_and_body(self):
        document = parse("<html><head></head><body><div><body><p>x</p></body></div></body></html>")
        assert len(document.soup.find_all("body")) == 1
        assert len(document.soup.find_all("head")) == 1
        assert document.body.div.p.get_text() == "x"

    def test_trailing_content_moves_into_body(self):
        document = parse("<html><head></head><body><p>a</p></body></html><p>b</p>\n")
        paragraphs = document.body.find_all("p")
        assert [p.get_text() for p in paragraphs] == ["a", "b"]
        assert document.serialize().endswith("</html>\n")

    def test_invalid_head_nodes_move_to_body_in_order(self):
        document = parse(
            "<html><head><title>t</title><p>one</p><div>two</div></head>"
            "<body><span>three</span></body></html>"
        )
        names = [child.name for child in document.body.children if child.name]
        assert names == ["p", "div", "span"]
        assert document.head.title is not None

    def test_head_noscript_stays_in_head(self):
        document = parse(
            "<html><head><noscript><style>body{opacity:1}</style></noscript>"
            "<title>t</title></head><body><p>x</p></body></html>"
        )
        assert document.head.find("noscript") is not None
        assert document.body.find("noscript") is None
        assert text_content(document.head.noscript.style) == "body{opacity:1}"

    def test_leading_comments_are_kept_before_html(self):
        html = serialize(parse("<!-- generated --><!DOCTYPE html><html><body>x</body></html>"))
        assert html.index("<!-- generated -->") < html.index("<html>")

    def test_charset_meta_is_replaced_by_utf8(self):
        document = parse(
            '<html><head><title>t</title><meta http-equiv="Content-Type" '
            'content="text/html; charset=iso-8859-1"></head><body></body></html>'
        )
        metas = document.head.find_all("meta")
        assert len(metas) == 1
        assert metas[0]["charset"] == "utf-8"
        assert document.head.contents[0] is metas[0]

    def test_content_before_body_without_head_becomes_head(self):
        document = parse("<title>t</title><body><p>x</p></body>")
        assert document.head.title.get_text() == "t"
        assert document.body.p.get_text() == "x"

    def test_empty_input_raises_parse_error(self):
        with pytest.raises(ParseError):
            parse("   ")


class TestEncoding:

    def test_declared_latin1_bytes_are_decoded(self):
        raw = (
            '<html><head><meta charset="iso-8859-1"></head>'
            '<body><p>café</p></body></html>'
        ).encode("latin-1")
        document = Document.from_html(raw)
        assert document.original_encoding == "windows-1252"
        html = document.serialize()
        assert "<p>café</p>" in html
        assert "iso-8859-1" not in html

    def test_undeclared_utf8_bytes(self):
        document = Document.from_html("<p>naïve – ok</p>".encode("utf-8"))
        assert document.body.p.get_text() == "naïve – ok"

    def test_undeclared_euc_jp_is_detected(self):
        raw = "<html><head></head><body><p>日本語のテキスト</p></body></html>".encode("euc-jp")
        document = Document.from_html(raw)
        assert document.original_encoding == "euc-jp"
        assert document.body.p.get_text() == "日本語のテキスト"
        assert "<p>日本語のテキスト</p>".encode("utf-8") in document.serialize().encode("utf-8")

    def test_undeclared_iso_8859_15_is_detected(self):
        # € and œ only exist in the -15 variant of Latin
        raw = "<html><head></head><body><p>Prix: 5€, café, œuvre</p></body></html>".encode("iso-8859-15")
        document = Document.from_html(raw)
        assert document.original_encoding == "iso-8859-15"
        assert document.body.p.get_text() == "Prix: 5€, café, œuvre"
        assert "œuvre".encode("utf-8") in document.serialize().encode("utf-8")

    def test_detect_charset_maps_like_browsers(self):
        assert detect_charset('<meta charset="ISO-8859-1">') == "windows-1252"
        assert detect_charset('<meta http-equiv="Content-Type" content="text/html; charset=Shift_JIS">') == "shift_jis"
        assert detect_charset("<p>no declaration</p>") is None


class TestHandles:

    def test_handles_follow_replacement(self):
        document = parse("<p>x</p>")
        new_body = document.create_element("body", {"class": "replaced"})
        document.body.replace_with(new_body)
        assert document.body is new_body

    def test_from_node_adopts_a_copy(self):
        source = parse("<div id='a'><p>inner</p></div>")
        div = source.body.div
        document = Document.from_node(div)
        assert document.body.div["id"] == "a"
        assert source.body.div is div

    def test_serialize_single_node(self):
        document = parse('<div><p [text]="t">x</p></div>')
        assert document.serialize(document.body.div) == '<div><p [text]="t">x</p></div>'

    def test_comments_survive(self):
        document = parse("<p>a<!-- note -->b</p>")
        comments = document.body.find_all(string=lambda s: isinstance(s, Comment))
        assert [str(c) for c in comments] == [" note "]

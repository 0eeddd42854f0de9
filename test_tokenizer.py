#!/usr/bin/env python3
"""
Tests for the markup tokenizer.

The tokenizer must never lose a byte: every structural repair in
document.py relies on render(tokenize(html)) giving back the input.
"""

from pathlib import Path

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from amp_sanitizer.tokenizer import (
    TokenType,
    markup_token,
    rebuild_start_tag,
    render,
    tokenize,
)


QUIRKY_INPUTS = [
    "",
    "plain text only",
    "a < b and c > d",
    "<!DOCTYPE html><html><head></head><body></body></html>",
    "<!-- unterminated comment",
    '<div class="unterminated>text</div>',
    "<p [text]=\"state.x\" data-x='1' hidden>bound</p>",
    "<br/><img src=a.png /><input disabled>",
    "<script>if (a < b && c > d) { document.write('</div>'); }</script>",
    "<style>p > a { color: red }</style><textarea><b>not bold</b></textarea>",
    "<?php echo 1; ?><![CDATA[x]]>",
    "<template type=\"amp-mustache\"><a href=\"{{url}}\">{{{raw}}}</a></template>",
    "</ end tag with space><div",
]


@pytest.mark.parametrize("html", QUIRKY_INPUTS)
def test_render_reproduces_input(html):
    """Every character of the input lands in exactly one token."""
    assert render(tokenize(html)) == html


def test_token_kinds():
    tokens = tokenize('<!DOCTYPE html><!-- c --><p class="x">hi</p><?pi?>')
    assert [t.type for t in tokens] == [
        TokenType.DOCTYPE,
        TokenType.COMMENT,
        TokenType.START_TAG,
        TokenType.TEXT,
        TokenType.END_TAG,
        TokenType.DECLARATION,
    ]
    start = tokens[2]
    assert start.name == "p"
    assert start.get_attr("CLASS").value == "x"


def test_raw_text_content_is_one_token():
    """Markup-looking text inside <script> must not be split into tags."""
    tokens = tokenize("<script>var s = '<p>not a tag</p>';</script><p>after</p>")
    assert tokens[0].is_start("script")
    assert tokens[1].type is TokenType.TEXT
    assert tokens[1].raw == "var s = '<p>not a tag</p>';"
    assert tokens[2].is_end("script")
    assert tokens[3].is_start("p")


def test_literal_less_than_stays_text():
    tokens = tokenize("1 < 2")
    assert len(tokens) == 1
    assert tokens[0].type is TokenType.TEXT


def test_malformed_attributes_are_left_alone():
    """An unterminated quote leaves attrs as None so passes skip the tag."""
    tokens = tokenize('<div class="oops>text')
    assert tokens[0].is_start("div")
    assert tokens[0].attrs is None


def test_attribute_values():
    token = tokenize("<input type=text value='a b' disabled data-x = \"y\">")[0]
    assert token.get_attr("type").value == "text"
    assert token.get_attr("value").value == "a b"
    assert token.get_attr("disabled").value is None
    assert token.get_attr("data-x").value == "y"


def test_bracket_attribute_names_are_kept_verbatim():
    token = tokenize('<p [class]="cls" [text]="t">x</p>')[0]
    assert [attr.name for attr in token.attrs] == ["[class]", "[text]"]


def test_renamed_attribute_keeps_spacing_and_value():
    token = tokenize('<p  [text] = "t">x</p>')[0]
    renamed = token.attrs[0].renamed("data-amp-bind-text")
    assert renamed.raw == '  data-amp-bind-text = "t"'
    assert renamed.value == "t"


def test_self_closing_detection():
    tokens = tokenize("<br/><br><amp-img src=a />")
    assert tokens[0].self_closing
    assert not tokens[1].self_closing
    assert tokens[2].self_closing


def test_rebuild_start_tag_drops_self_closing_slash():
    token = tokenize('<amp-img src="a.png" />')[0]
    assert rebuild_start_tag(token, token.attrs) == '<amp-img src="a.png">'


def test_markup_token_requires_single_token():
    assert markup_token("</body>").is_end("body")
    with pytest.raises(ValueError):
        markup_token("<a><b>")

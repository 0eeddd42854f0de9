"""
Markup tokenizer used by the Document pre- and post-processing passes.

This is not an HTML parser.  It splits a string into a flat token stream
(text, start tags, end tags, comments, doctype, other declarations) so that
the structural repairs in document.py can work on exact source slices
instead of chained regular expressions.

Guarantees:
  - render(tokenize(html)) == html for every input (every byte lands in
    exactly one token's `raw`).
  - Contents of raw-text elements (script, style, textarea, title) are a
    single TEXT token; markup-looking text inside them is never split.
  - A start tag whose attribute run cannot be fully tokenized (e.g. an
    unterminated quote) keeps `attrs = None`.  Passes must leave such
    tags untouched (fail open).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TokenType(Enum):
    TEXT = "text"
    START_TAG = "start_tag"
    END_TAG = "end_tag"
    COMMENT = "comment"
    DOCTYPE = "doctype"
    DECLARATION = "declaration"   # <![CDATA[...]]>, <?php ...?>, other <!...>


# Elements whose content is not markup.  Matches what html.parser treats as
# CDATA content plus the two RCDATA elements, so tokens agree with the tree.
RAW_TEXT_ELEMENTS = frozenset({"script", "style", "textarea", "title"})

WHITESPACE = " \t\n\r\f"

_raw_text_end_patterns: dict = {}


@dataclass
class Attribute:
    """One attribute of a start tag, as written in the source."""
    name: str            # case preserved
    raw: str             # exact slice, including the leading whitespace
    value_raw: str = ""  # the "=value" part as written ("" for bare attributes)

    @property
    def value(self) -> Optional[str]:
        """Unquoted value, or None for a bare attribute."""
        if not self.value_raw:
            return None
        value = self.value_raw.lstrip(WHITESPACE + "=").lstrip(WHITESPACE)
        if len(value) >= 2 and value[0] in "\"'" and value[-1] == value[0]:
            return value[1:-1]
        return value

    def renamed(self, name: str) -> "Attribute":
        """Same attribute (whitespace and value untouched) under another name."""
        lead = self.raw[:len(self.raw) - len(self.name) - len(self.value_raw)]
        return Attribute(name=name, raw=lead + name + self.value_raw, value_raw=self.value_raw)


@dataclass
class Token:
    type: TokenType
    raw: str
    name: str = ""                          # lowercased tag name
    raw_name: str = ""                      # tag name as written
    attrs: Optional[list[Attribute]] = None
    tail: str = ""                          # whitespace and "/" before the closing ">"
    self_closing: bool = False

    def is_whitespace(self) -> bool:
        return self.type is TokenType.TEXT and not self.raw.strip(WHITESPACE)

    def is_start(self, *names: str) -> bool:
        return self.type is TokenType.START_TAG and (not names or self.name in names)

    def is_end(self, *names: str) -> bool:
        return self.type is TokenType.END_TAG and (not names or self.name in names)

    def get_attr(self, name: str) -> Optional[Attribute]:
        """Case-insensitive attribute lookup (first occurrence wins)."""
        name = name.lower()
        for attr in self.attrs or []:
            if attr.name.lower() == name:
                return attr
        return None


def text_token(raw: str) -> Token:
    return Token(TokenType.TEXT, raw)


def markup_token(raw: str) -> Token:
    """
    Build a token for synthesized markup (e.g. "<head>" or "</body>").

    The raw string is re-tokenized so the token carries the same fields a
    token read from the source would.
    """
    tokens = tokenize(raw)
    if len(tokens) != 1:
        raise ValueError(f"Expected a single markup token, got {len(tokens)}: {raw!r}")
    return tokens[0]


def render(tokens: list) -> str:
    """Join tokens back into a string."""
    return "".join(token.raw for token in tokens)


def rebuild_start_tag(token: Token, attrs: list) -> str:
    """
    Serialize a start tag with a replacement attribute list.

    A self-closing slash is dropped: the rebuilt tag is always an open tag.
    """
    tail = token.tail.rstrip(WHITESPACE + "/")
    return "<" + token.raw_name + "".join(attr.raw for attr in attrs) + tail + ">"


def tokenize(html: str) -> list:
    """Split HTML into a flat list of tokens covering every character."""
    tokens = []
    length = len(html)
    pos = 0
    text_start = 0

    while pos < length:
        lt = html.find("<", pos)
        if lt == -1:
            break

        token, end = _read_markup(html, lt)
        if token is None:
            # Literal "<" in text
            pos = lt + 1
            continue

        if lt > text_start:
            tokens.append(text_token(html[text_start:lt]))
        tokens.append(token)
        pos = text_start = end

        if token.type is TokenType.START_TAG and token.name in RAW_TEXT_ELEMENTS and not token.self_closing:
            close = _find_raw_text_end(html, pos, token.name)
            if close > pos:
                tokens.append(text_token(html[pos:close]))
            pos = text_start = close

    if text_start < length:
        tokens.append(text_token(html[text_start:]))

    return tokens


def _find_raw_text_end(html: str, pos: int, name: str) -> int:
    pattern = _raw_text_end_patterns.get(name)
    if pattern is None:
        pattern = re.compile(r"</" + re.escape(name) + r"(?=[\s/>]|$)", re.IGNORECASE)
        _raw_text_end_patterns[name] = pattern
    match = pattern.search(html, pos)
    return match.start() if match else len(html)


def _read_markup(html: str, lt: int) -> tuple:
    """Read the markup construct starting at html[lt] == "<"."""
    length = len(html)
    nxt = html[lt + 1] if lt + 1 < length else ""

    if html.startswith("<!--", lt):
        close = html.find("-->", lt + 4)
        end = length if close == -1 else close + 3
        return Token(TokenType.COMMENT, html[lt:end]), end

    if nxt in ("!", "?"):
        close = html.find(">", lt + 2)
        end = length if close == -1 else close + 1
        raw = html[lt:end]
        if raw[2:9].lower() == "doctype":
            return Token(TokenType.DOCTYPE, raw, name="doctype"), end
        return Token(TokenType.DECLARATION, raw), end

    if nxt == "/":
        if lt + 2 >= length or not html[lt + 2].isalpha():
            return None, lt + 1
        name_end = _scan_name(html, lt + 2)
        close = html.find(">", name_end)
        if close == -1:
            return None, lt + 1
        raw_name = html[lt + 2:name_end]
        return Token(TokenType.END_TAG, html[lt:close + 1], name=raw_name.lower(), raw_name=raw_name), close + 1

    if nxt.isalpha():
        name_end = _scan_name(html, lt + 1)
        raw_name = html[lt + 1:name_end]
        attrs, tail, end = _read_attributes(html, name_end)
        if end == -1:
            return None, lt + 1
        return Token(
            TokenType.START_TAG,
            html[lt:end],
            name=raw_name.lower(),
            raw_name=raw_name,
            attrs=attrs,
            tail=tail,
            self_closing=tail.endswith("/"),
        ), end

    return None, lt + 1


def _scan_name(html: str, pos: int) -> int:
    length = len(html)
    while pos < length and html[pos] not in WHITESPACE and html[pos] not in "/>":
        pos += 1
    return pos


def _skip_whitespace(html: str, pos: int) -> int:
    length = len(html)
    while pos < length and html[pos] in WHITESPACE:
        pos += 1
    return pos


def _read_attributes(html: str, pos: int) -> tuple:
    """
    Read the attribute run of a start tag up to and including its ">".

    Returns (attrs, tail, end).  `attrs` is None when the run is malformed;
    `end` is -1 when no closing ">" exists at all.
    """
    length = len(html)
    attrs = []
    lead = pos

    while True:
        pos = _skip_whitespace(html, pos)
        if pos >= length:
            return None, "", -1

        char = html[pos]
        if char == ">":
            return attrs, html[lead:pos], pos + 1
        if char == "/":
            if pos + 1 < length and html[pos + 1] == ">":
                return attrs, html[lead:pos + 1], pos + 2
            # A stray "/" separates attributes like whitespace does
            pos += 1
            continue

        name_start = pos
        if char == "=":
            pos += 1
        while pos < length and html[pos] not in WHITESPACE and html[pos] not in "/>=":
            pos += 1
        name = html[name_start:pos]

        value_start = pos
        probe = _skip_whitespace(html, pos)
        if probe < length and html[probe] == "=":
            probe = _skip_whitespace(html, probe + 1)
            if probe >= length:
                return None, "", -1
            quote = html[probe]
            if quote in "\"'":
                close = html.find(quote, probe + 1)
                if close == -1:
                    return _malformed(html, name_start)
                pos = close + 1
            else:
                while probe < length and html[probe] not in WHITESPACE and html[probe] != ">":
                    probe += 1
                pos = probe
            value_raw = html[value_start:pos]
        else:
            value_raw = ""

        attrs.append(Attribute(name=name, raw=html[lead:pos], value_raw=value_raw))
        lead = pos


def _malformed(html: str, pos: int) -> tuple:
    """Fallback for an attribute run that cannot be tokenized."""
    close = html.find(">", pos)
    if close == -1:
        return None, "", -1
    return None, "", close + 1

"""
Document model: loosely-valid HTML in, one normalized tree out, HTML back.

Pipeline position: first and last stage of every uncached request.
Input:  raw HTML (str or bytes, possibly a fragment, any encoding)
Output: Document wrapping a BeautifulSoup tree with exactly one <head> and
        one <body> directly under <html>; serialize() turns it back into HTML

Before the tree parser sees the markup, token passes (see tokenizer.py)
repair what parsers get wrong, in this order:
  1. [attr] binding attributes → data-amp-bind-attr
  2. void elements get explicit closing tags
  3. doctype / <html> / <head> / <body> are completed
  4. <noscript> inside <head> is parked behind placeholder comments
  5. charset declarations are stripped (the tree is always UTF-8)

serialize() protects template literals inside <template>, writes the tree,
then undoes the binding rewrite and drops the synthetic void closing tags.

Design principle: a pass that cannot make sense of a tag leaves it alone.
Only a document that cannot be completed at all raises ParseError.
"""

import copy
import hashlib
import re
import secrets
from typing import Optional, Union

from bs4 import BeautifulSoup, Comment, NavigableString, Script, Stylesheet, Tag, TemplateString, UnicodeDammit
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

from .exceptions import ParseError
from .logger import get_module_logger
from .tokenizer import (
    Token,
    TokenType,
    markup_token,
    rebuild_start_tag,
    render,
    tokenize,
)

logger = get_module_logger("document")


# Elements that never have content.  Some parsers only close them when an
# explicit end tag is present, so one is added before parsing and removed
# again on output.
VOID_ELEMENTS = frozenset({
    "area", "base", "basefont", "bgsound", "br", "col", "embed", "frame",
    "hr", "img", "input", "keygen", "link", "meta", "param", "source",
    "track", "wbr",
})

# Element children allowed to stay in <head>
HEAD_ELEMENTS = frozenset({
    "title", "base", "link", "meta", "style", "noscript", "script",
})

BIND_ATTRIBUTE_PREFIX = "data-amp-bind-"
_BIND_ATTRIBUTE = re.compile(r"^\[([A-Za-z0-9_.\-]+)\]$")

# Longest tokens first so "{{{" is never split into "{{" + "{"
MUSTACHE_TOKENS = ("{{{", "}}}", "{{#", "{{^", "{{/", "{{", "}}")

NOSCRIPT_PLACEHOLDER_PREFIX = "noscript:"

# Whitespace inside these is content
PRESERVE_WHITESPACE_TAGS = frozenset({"pre", "textarea"})

# Tried in order when bytes carry no usable charset declaration
ENCODING_PRIORITY = ["utf-8", "euc-jp", "iso-2022-jp", "iso-8859-15", "iso-8859-1", "ascii"]

# html.parser first: it builds the tree exactly as written and leaves the
# structural decisions to the token passes above.  lxml and html5lib are
# fallbacks that impose their own structure, repaired by
# normalize_dom_structure().
PARSER_CHAIN = ("html.parser", "lxml", "html5lib")

# WHATWG encoding spec: browsers silently remap these charsets.
# https://encoding.spec.whatwg.org/#names-and-labels
WHATWG_CHARSET_MAP = {
    "iso-8859-1": "windows-1252",
    "iso8859-1": "windows-1252",
    "iso88591": "windows-1252",
    "latin-1": "windows-1252",
    "latin1": "windows-1252",
    "us-ascii": "windows-1252",
    "ascii": "windows-1252",
    "iso-8859-9": "windows-1254",
    "iso-8859-11": "windows-874",
}


class AmpFormatter(HTMLFormatter):
    """
    HTML output formatter.

    bs4's stock formatters sort attributes alphabetically; AMP output keeps
    them in source order.  Void elements are written as <br>, not <br/>.
    """

    def __init__(self):
        super().__init__(
            entity_substitution=EntitySubstitution.substitute_xml,
            void_element_close_prefix=None,
            empty_attributes_are_booleans=False,
        )

    def attributes(self, tag):
        if tag.attrs is None:
            return []
        return list(tag.attrs.items())


AMP_FORMATTER = AmpFormatter()


def detect_charset(head: str) -> Optional[str]:
    """
    Find a declared charset in the first 2KB of a document.

    Looks for <meta charset=...> first, then the legacy
    <meta http-equiv="Content-Type" content="...; charset=...">.
    Returns the browser-equivalent charset, or None when nothing is declared.
    """
    head = head[:2048]

    match = re.search(r'<meta[^>]+charset=["\']?\s*([^\s"\';>]+)', head, re.IGNORECASE)
    if not match:
        match = re.search(
            r'<meta[^>]+content=["\'][^"\']*charset=([^\s"\';>]+)',
            head, re.IGNORECASE
        )
    if not match:
        return None

    charset = match.group(1).strip().lower()
    return WHATWG_CHARSET_MAP.get(charset, charset)


def decode_html(raw: bytes, encoding: Optional[str] = None) -> tuple[str, str]:
    """
    Decode HTML bytes to text.

    An explicit `encoding` or a declared charset is tried first; otherwise
    ENCODING_PRIORITY is tried in order.  Undecodable input falls back to
    UTF-8 with replacement characters rather than failing.

    Returns:
        Tuple of (text, encoding actually used)
    """
    declared = encoding or detect_charset(raw[:2048].decode("ascii", errors="ignore"))
    dammit = UnicodeDammit(
        raw,
        known_definite_encodings=[declared] if declared else [],
        user_encodings=ENCODING_PRIORITY,
        is_html=True,
    )
    if dammit.unicode_markup is None:
        logger.warning("Could not detect encoding, decoding as UTF-8 with replacements")
        return raw.decode("utf-8", errors="replace"), "utf-8"
    return dammit.unicode_markup, (dammit.original_encoding or "utf-8").lower()


# String classes bs4 uses for element text, including the raw text of
# <style>, <script> and <template>
TEXT_STRING_TYPES = (NavigableString, Stylesheet, Script, TemplateString)


def text_content(element: Tag) -> str:
    """All text inside `element`, whichever string class holds it."""
    return element.get_text(types=TEXT_STRING_TYPES)


def is_valid_head_node(node) -> bool:
    """True if `node` may stay a direct child of <head>."""
    # Comment is a NavigableString subclass, so it is checked first
    if isinstance(node, Comment):
        return True
    if isinstance(node, Tag):
        return node.name in HEAD_ELEMENTS
    if isinstance(node, NavigableString):
        return not node.strip()
    return False


def _parser_kwargs(parser: str) -> dict:
    # class="a b" stays one string; the first of duplicate attributes wins
    # the way it does in browsers
    kwargs = {"multi_valued_attributes": None}
    if parser == "html.parser":
        kwargs["on_duplicate_attribute"] = "ignore"
    return kwargs


# --- Token passes (before parsing) ---

def rewrite_bind_attributes(tokens: list) -> list:
    """[attr]="expr" → data-amp-bind-attr="expr" on every fully tokenized start tag."""
    result = []
    for token in tokens:
        if token.type is TokenType.START_TAG and token.attrs:
            renamed = []
            changed = False
            for attr in token.attrs:
                match = _BIND_ATTRIBUTE.match(attr.name)
                if match:
                    attr = attr.renamed(BIND_ATTRIBUTE_PREFIX + match.group(1))
                    changed = True
                renamed.append(attr)
            if changed:
                token = markup_token(rebuild_start_tag(token, renamed))
        result.append(token)
    return result


def close_void_elements(tokens: list) -> list:
    """Add an explicit end tag after every void element that lacks one."""
    result = []
    for index, token in enumerate(tokens):
        result.append(token)
        if not token.is_start(*VOID_ELEMENTS) or token.self_closing:
            continue
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if following is not None and following.is_end(token.name):
            continue
        result.append(markup_token(f"</{token.name}>"))
    return result


def _find(tokens: list, predicate, start: int = 0) -> Optional[int]:
    for index in range(start, len(tokens)):
        if predicate(tokens[index]):
            return index
    return None


def _end_of_head_content(tokens: list, start: int) -> int:
    """Index of the first token after `start` that cannot belong to <head>."""
    open_element = None
    for index in range(start, len(tokens)):
        token = tokens[index]
        if open_element is not None:
            if token.is_end(open_element):
                open_element = None
            continue
        if token.type in (TokenType.COMMENT, TokenType.END_TAG) or token.is_whitespace():
            continue
        if token.is_start(*HEAD_ELEMENTS):
            if token.name not in VOID_ELEMENTS and not token.self_closing:
                open_element = token.name
            continue
        return index
    return len(tokens)


def complete_structure(tokens: list) -> list:
    """
    Make sure doctype, <html>, <head> and <body> are all present.

    Comments before <html> stay there (after the doctype).  Trailing
    whitespace after </html> stays after it; any other trailing content ends
    up before </html> and is moved into <body> after parsing.
    """
    doctype = None
    prelude = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.type is TokenType.DOCTYPE:
            if doctype is None:
                doctype = token
        elif token.type is TokenType.COMMENT or token.is_whitespace():
            prelude.append(token)
        else:
            break
        index += 1
    while prelude and prelude[0].is_whitespace():
        prelude.pop(0)

    rest = tokens[index:]
    trailing = []
    last_close = None
    for position, token in enumerate(rest):
        if token.is_end("html"):
            last_close = position
    if last_close is not None:
        after = rest[last_close + 1:]
        while after and after[-1].is_whitespace():
            trailing.insert(0, after.pop())
        rest = rest[:last_close] + after

    html_open = None
    content = []
    for token in rest:
        if token.is_start("html"):
            if html_open is None:
                html_open = token
            continue
        if token.is_end("html"):
            continue
        content.append(token)

    if doctype is None:
        doctype_raw = "<!DOCTYPE html>"
    else:
        # Every tree builder writes the keyword upper-case
        doctype_raw = "<!DOCTYPE" + doctype.raw[len("<!doctype"):]

    return (
        [markup_token(doctype_raw)]
        + prelude
        + [html_open or markup_token("<html>")]
        + _complete_head_and_body(content)
        + [markup_token("</html>")]
        + trailing
    )


def _complete_head_and_body(content: list) -> list:
    content = list(content)
    head_start = _find(content, lambda t: t.is_start("head"))
    body_start = _find(content, lambda t: t.is_start("body"))

    if head_start is None and body_start is None:
        return (
            [markup_token("<head>"), markup_token("</head>"), markup_token("<body>")]
            + content
            + [markup_token("</body>")]
        )

    if head_start is None:
        # Whatever precedes <body> is treated as head content
        content.insert(body_start, markup_token("</head>"))
        content.insert(0, markup_token("<head>"))
    elif body_start is None:
        head_end = _find(content, lambda t: t.is_end("head"), head_start + 1)
        if head_end is not None:
            content.insert(head_end + 1, markup_token("<body>"))
        else:
            split = _end_of_head_content(content, head_start + 1)
            content[split:split] = [markup_token("</head>"), markup_token("<body>")]
    else:
        head_end = _find(content, lambda t: t.is_end("head"), head_start + 1)
        if head_end is None or head_end > body_start:
            content.insert(body_start, markup_token("</head>"))

    if _find(content, lambda t: t.is_end("body")) is None:
        content.append(markup_token("</body>"))
    return content


def park_head_noscripts(tokens: list, placeholders: dict) -> list:
    """
    Replace <noscript>...</noscript> inside <head> with placeholder comments.

    Parsers that follow the scripting-enabled rules close <head> early at a
    <noscript>; the placeholders are swapped back for parsed elements right
    after the tree is built.
    """
    head_start = _find(tokens, lambda t: t.is_start("head"))
    if head_start is None:
        return tokens

    result = tokens[:head_start + 1]
    index = head_start + 1
    while index < len(tokens):
        token = tokens[index]
        if token.is_end("head") or token.is_start("body"):
            break
        if token.is_start("noscript"):
            close = _find(tokens, lambda t: t.is_end("noscript"), index + 1)
            if close is not None:
                key = hashlib.md5(
                    f"{len(placeholders)}:{render(tokens[index:close + 1])}".encode("utf-8")
                ).hexdigest()
                placeholders[key] = render(tokens[index:close + 1])
                result.append(markup_token(f"<!--{NOSCRIPT_PLACEHOLDER_PREFIX}{key}-->"))
                index = close + 1
                continue
        result.append(token)
        index += 1

    return result + tokens[index:]


def _is_charset_meta(token: Token) -> bool:
    if not token.is_start("meta") or token.attrs is None:
        return False
    if token.get_attr("charset") is not None:
        return True
    http_equiv = token.get_attr("http-equiv")
    content = token.get_attr("content")
    return (
        http_equiv is not None
        and (http_equiv.value or "").strip().lower() == "content-type"
        and content is not None
        and "charset" in (content.value or "").lower()
    )


def strip_charset_declarations(tokens: list) -> list:
    """Drop every charset <meta> (and the end tag added for it)."""
    result = []
    skip_end = False
    for token in tokens:
        if skip_end and token.is_end("meta"):
            skip_end = False
            continue
        skip_end = False
        if _is_charset_meta(token):
            skip_end = True
            continue
        result.append(token)
    return result


# --- Output passes (after serialization) ---

def restore_markup(html: str) -> str:
    """Undo the binding rewrite and drop end tags of void elements."""
    output = []
    for token in tokenize(html):
        if token.is_end(*VOID_ELEMENTS):
            continue
        if token.type is TokenType.START_TAG and token.attrs:
            if any(attr.name.lower().startswith(BIND_ATTRIBUTE_PREFIX) for attr in token.attrs):
                attrs = [
                    attr.renamed("[" + attr.name[len(BIND_ATTRIBUTE_PREFIX):] + "]")
                    if attr.name.lower().startswith(BIND_ATTRIBUTE_PREFIX) else attr
                    for attr in token.attrs
                ]
                output.append(rebuild_start_tag(token, attrs))
                continue
        output.append(token.raw)
    return "".join(output)


class Document:
    """
    A parsed HTML document with stable <html>, <head> and <body> handles.

    Handles are cached and recomputed whenever the cached element is no
    longer attached where it should be (e.g. after a sanitizer replaced it).
    """

    def __init__(self, soup: BeautifulSoup, original_encoding: str = "utf-8"):
        self.soup = soup
        self.original_encoding = original_encoding
        # Salted per document so markup cannot forge a placeholder
        salt = secrets.token_hex(8)
        self._placeholders = {
            "_amp_mustache_" + hashlib.md5((salt + token).encode("utf-8")).hexdigest(): token
            for token in MUSTACHE_TOKENS
        }
        self._html: Optional[Tag] = None
        self._head: Optional[Tag] = None
        self._body: Optional[Tag] = None

    # --- Construction ---

    @classmethod
    def from_html(cls, html: Union[str, bytes], encoding: Optional[str] = None) -> "Document":
        """
        Parse HTML into a normalized Document.

        Args:
            html: Markup as text, or as bytes in any encoding
            encoding: Charset to try first when `html` is bytes

        Raises:
            ParseError: If the input is empty or no parser can build a tree
        """
        if isinstance(html, bytes):
            text, original_encoding = decode_html(html, encoding)
        else:
            text = html
            original_encoding = (encoding or detect_charset(text) or "utf-8").lower()

        if not text or not text.strip():
            raise ParseError("Cannot parse an empty document")

        placeholders = {}
        tokens = tokenize(text)
        tokens = rewrite_bind_attributes(tokens)
        tokens = close_void_elements(tokens)
        tokens = complete_structure(tokens)
        tokens = park_head_noscripts(tokens, placeholders)
        tokens = strip_charset_declarations(tokens)
        markup = render(tokens)

        soup = None
        failures = {}
        for parser in PARSER_CHAIN:
            try:
                soup = BeautifulSoup(markup, parser, **_parser_kwargs(parser))
                break
            except Exception as e:
                logger.warning(f"{parser} parsing failed, trying next parser: {e}")
                failures[parser] = str(e)

        if soup is None:
            raise ParseError("All HTML parsers failed", details=failures)

        document = cls(soup, original_encoding)
        document._restore_head_noscripts(placeholders)
        document.normalize_dom_structure()
        logger.debug(
            f"Parsed document ({len(text)} chars, encoding {original_encoding}, "
            f"{len(placeholders)} parked noscript elements)"
        )
        return document

    @classmethod
    def from_node(cls, node: Tag) -> "Document":
        """
        Build a new Document around a copy of `node` from another document.

        An <html>, <head> or <body> node takes that place in the new
        document; any other node becomes the content of <body>.
        """
        document = cls.from_html("<!DOCTYPE html><html><head></head><body></body></html>")
        adopted = copy.copy(node)

        if isinstance(adopted, Tag) and adopted.name == "html":
            document.html.replace_with(adopted)
        elif isinstance(adopted, Tag) and adopted.name == "head":
            document.head.replace_with(adopted)
        elif isinstance(adopted, Tag) and adopted.name == "body":
            document.body.replace_with(adopted)
        else:
            document.body.append(adopted)

        document.reset()
        document.normalize_dom_structure()
        return document

    def _restore_head_noscripts(self, placeholders: dict) -> None:
        if not placeholders:
            return
        for comment in self.soup.find_all(string=lambda s: isinstance(s, Comment)):
            if not comment.startswith(NOSCRIPT_PLACEHOLDER_PREFIX):
                continue
            raw = placeholders.get(comment[len(NOSCRIPT_PLACEHOLDER_PREFIX):])
            if raw is None:
                continue
            fragment = BeautifulSoup(raw, "html.parser", **_parser_kwargs("html.parser"))
            for node in list(fragment.contents):
                comment.insert_before(node.extract())
            comment.extract()

    # --- Structure ---

    def normalize_dom_structure(self) -> None:
        """
        Enforce one <html> holding exactly one <head> and one <body>.

        Also unwraps stray nested <head>/<body> elements, moves content that
        sits beside them into <body>, puts the UTF-8 charset meta first in
        <head>, and moves nodes not allowed in <head> to the front of <body>.
        """
        html = self.soup.find("html")
        if html is None:
            html = self.soup.new_tag("html")
            for child in list(self.soup.contents):
                html.append(child.extract())
            self.soup.append(html)
        elif html.parent is not self.soup:
            self.soup.append(html.extract())
        self._html = html

        head = html.find("head", recursive=False)
        if head is None:
            head = html.find("head") or self.soup.new_tag("head")
            html.insert(0, head.extract())
        body = html.find("body", recursive=False)
        if body is None:
            body = html.find("body") or self.soup.new_tag("body")
            head.insert_after(body.extract())

        for name, keep in (("head", head), ("body", body), ("html", html)):
            for stray in self.soup.find_all(name):
                if stray is not keep:
                    stray.unwrap()

        # Content beside <head>/<body> belongs to <body>
        before_body = []
        after_body = []
        seen_body = False
        for child in list(html.contents):
            if child is head:
                continue
            if child is body:
                seen_body = True
                continue
            if isinstance(child, NavigableString) and not isinstance(child, Comment) and not child.strip():
                continue
            (after_body if seen_body else before_body).append(child)
        for child in reversed(before_body):
            body.insert(0, child.extract())
        for child in after_body:
            body.append(child.extract())

        for meta in head.find_all("meta", charset=True, recursive=False):
            meta.decompose()
        head.insert(0, self.soup.new_tag("meta", attrs={"charset": "utf-8"}))

        # Walk backward so moved nodes keep their relative order
        for child in reversed(list(head.contents)):
            if not is_valid_head_node(child):
                body.insert(0, child.extract())

        self._head = head
        self._body = body

    def is_valid_head_node(self, node) -> bool:
        return is_valid_head_node(node)

    def reset(self) -> None:
        """Forget cached handles; they are recomputed on next access."""
        self._html = None
        self._head = None
        self._body = None

    def collapse_whitespace(self) -> int:
        """
        Merge runs of whitespace-only text left behind by removed nodes.

        The parser reads such a run back as a single newline (or space), so
        merging them keeps serialize() stable when the output is parsed
        again.  Returns the number of strings merged away.
        """
        merged = 0
        for string in list(self.soup.find_all(string=True)):
            if type(string) is not NavigableString or string.strip():
                continue
            if any(parent.name in PRESERVE_WHITESPACE_TAGS for parent in string.parents):
                continue
            previous = string.previous_sibling
            if type(previous) is not NavigableString or previous.strip():
                continue
            run = str(previous) + str(string)
            previous.replace_with(NavigableString("\n" if "\n" in run else " "))
            string.extract()
            merged += 1
        return merged

    @property
    def html(self) -> Tag:
        if self._html is None or self._html.parent is not self.soup:
            self._html = self.soup.find("html", recursive=False)
            if self._html is None:
                self.normalize_dom_structure()
        return self._html

    @property
    def head(self) -> Tag:
        if self._head is None or self._head.parent is not self.html:
            self._head = self.html.find("head", recursive=False)
            if self._head is None:
                self.normalize_dom_structure()
        return self._head

    @property
    def body(self) -> Tag:
        if self._body is None or self._body.parent is not self.html:
            self._body = self.html.find("body", recursive=False)
            if self._body is None:
                self.normalize_dom_structure()
        return self._body

    def create_element(self, name: str, attrs: Optional[dict] = None) -> Tag:
        return self.soup.new_tag(name, attrs=dict(attrs or {}))

    # --- Serialization ---

    def serialize(self, node: Optional[Tag] = None) -> str:
        """
        Write the document (or one node of it) back to HTML.

        Template literals inside <template> are swapped for placeholders while
        the tree is written so attribute escaping cannot touch them.
        """
        target = self.soup if node is None else node
        protected = self._protect_template_literals()
        try:
            html = target.decode(formatter=AMP_FORMATTER)
        finally:
            self._unprotect_template_literals(protected)

        if protected:
            for placeholder, token in self._placeholders.items():
                html = html.replace(placeholder, token)
        return restore_markup(html)

    def _protect(self, value: str) -> str:
        for placeholder, token in self._placeholders.items():
            value = value.replace(token, placeholder)
        return value

    def _protect_template_literals(self) -> list:
        """Returns what was replaced so the tree can be put back."""
        protected = []
        for template in self.soup.find_all("template"):
            for element in template.find_all(True):
                for name, value in list(element.attrs.items()):
                    if isinstance(value, str) and ("{{" in value or "}}" in value):
                        element[name] = self._protect(value)
                        protected.append((element, name, value))
        return protected

    def _unprotect_template_literals(self, protected: list) -> None:
        for element, name, value in protected:
            element[name] = value


def parse(html: Union[str, bytes]) -> Document:
    """Parse HTML into a Document (raises ParseError)."""
    return Document.from_html(html)


def serialize(document: Document) -> str:
    return document.serialize()

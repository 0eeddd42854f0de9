"""
CSS sub-pipeline.

Every <style> block (except the AMP boilerplate) and every inline style
attribute is parsed with tinycss2, checked against the rule table's CSS
constraints and written back in compact form.  Stylesheets are then merged,
in document order, into the single <style amp-custom> AMP allows in <head>.

The combined size of the merged stylesheet and all inline styles is held to
the rule table's byte budget: a stylesheet or inline style that would go
over it is reported as excessive-css and dropped when the policy agrees.

Constructs the policy keeps are written out as they were, so a kept error
still shows up in the served CSS.
"""

import re
from typing import Optional
from urllib.parse import urlparse

import tinycss2
from bs4 import Stylesheet, Tag

from .base_sanitizer import BaseSanitizer, ValidationReporter
from .document import Document, text_content
from .logger import get_module_logger
from .schemas import ErrorCode

logger = get_module_logger("style_sanitizer")

# At-rules whose block holds rules rather than declarations
_RULE_LIST_AT_RULES = ("media", "supports")


def compact(tokens) -> str:
    """Serialize component values with comments dropped and whitespace collapsed."""
    parts = []
    for token in tokens or []:
        if token.type == "comment":
            continue
        if token.type == "whitespace":
            if parts and parts[-1] != " ":
                parts.append(" ")
            continue
        parts.append(token.serialize())
    return "".join(parts).strip()


class StyleSanitizer(BaseSanitizer):
    name = "style"

    def __init__(self, rule_table, args=None):
        super().__init__(rule_table, args)
        css = rule_table.css
        self.allowed_at_rules = {name.lower() for name in css.allowed_at_rules}
        self.disallowed_properties = {name.lower() for name in css.disallowed_properties}
        self.disallowed_value = re.compile(css.disallowed_value_regex, re.IGNORECASE) if css.disallowed_value_regex else None
        self.disallowed_selector = re.compile(css.disallowed_selector_regex, re.IGNORECASE) if css.disallowed_selector_regex else None

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        css = self.rule_table.css
        self.sanitize_stylesheet_links(document, reporter)

        styles = []
        bytes_used = 0
        for element in document.soup.find_all(True):
            if element.name == "style":
                if element.has_attr("amp-boilerplate"):
                    continue
                sheet = self.sanitize_stylesheet(element, reporter)
                size = len(sheet.encode("utf-8"))
                if size and bytes_used + size > css.max_bytes:
                    if reporter.report(
                        ErrorCode.EXCESSIVE_CSS, element,
                        details={"css_bytes": size, "bytes_remaining": max(css.max_bytes - bytes_used, 0)}
                    ):
                        sheet, size = "", 0
                bytes_used += size
                styles.append((element, sheet))

            elif element.has_attr("style"):
                value = self.sanitize_style_attribute(element, reporter)
                if value is None:
                    continue
                size = len(value.encode("utf-8"))
                if size and bytes_used + size > css.max_bytes:
                    if reporter.report(
                        ErrorCode.EXCESSIVE_CSS, element, attribute="style",
                        details={"css_bytes": size, "bytes_remaining": max(css.max_bytes - bytes_used, 0)}
                    ):
                        del element["style"]
                        continue
                bytes_used += size

        self.merge_stylesheets(document, styles)
        logger.debug(f"CSS total: {bytes_used} of {css.max_bytes} bytes")

    # --- <link rel=stylesheet> ---

    def sanitize_stylesheet_links(self, document: Document, reporter: ValidationReporter) -> None:
        providers = {host.lower() for host in self.rule_table.css.allowed_font_providers}
        for link in document.soup.find_all("link"):
            rel = (link.get("rel") or "").lower().split()
            if "stylesheet" not in rel:
                continue
            href = (link.get("href") or "").strip()
            host = (urlparse(href).hostname or "").lower()
            if host in providers:
                continue
            self.remove_invalid_child(
                reporter, link, details={"reason": "external_stylesheet", "href": href}
            )

    # --- <style> ---

    def sanitize_stylesheet(self, element: Tag, reporter: ValidationReporter) -> str:
        text = text_content(element)
        rules = tinycss2.parse_stylesheet(text, skip_comments=True, skip_whitespace=True)
        sheet = self.process_rules(rules, element, reporter)

        media = (element.get("media") or "").strip()
        if sheet and media and media.lower() != "all":
            sheet = f"@media {media}{{{sheet}}}"
        return sheet

    def merge_stylesheets(self, document: Document, styles: list) -> None:
        """Replace every processed <style> with one <style amp-custom> in <head>."""
        if not styles:
            return

        head = document.head
        merged = {id(element) for element, _ in styles}
        anchor = None
        in_head = [element for element, _ in styles if element.parent is head]
        if in_head:
            anchor = in_head[0].previous_sibling
            while anchor is not None and id(anchor) in merged:
                anchor = anchor.previous_sibling

        for element, _ in styles:
            element.extract()

        combined = "".join(sheet for _, sheet in styles)
        if not combined:
            return
        # A literal end tag inside CSS would end the element early
        combined = re.sub(r"</(style)", r"<\\/\1", combined, flags=re.IGNORECASE)

        custom = document.create_element("style", {"amp-custom": ""})
        custom.append(Stylesheet(combined))
        if anchor is not None:
            anchor.insert_after(custom)
        elif in_head:
            head.insert(0, custom)
        else:
            head.append(custom)

    def process_rules(self, nodes, element: Tag, reporter: ValidationReporter) -> str:
        output = []
        for node in nodes:
            if node.type == "error":
                reporter.report(
                    ErrorCode.CSS_SYNTAX_INVALID, element,
                    details={"kind": node.kind, "message": node.message}
                )
            elif node.type == "qualified-rule":
                output.append(self.process_qualified_rule(node, element, reporter))
            elif node.type == "at-rule":
                output.append(self.process_at_rule(node, element, reporter))
        return "".join(output)

    def process_qualified_rule(self, rule, element: Tag, reporter: ValidationReporter) -> str:
        selector = compact(rule.prelude)
        if self.disallowed_selector and self.disallowed_selector.search(selector):
            if reporter.report(ErrorCode.DISALLOWED_CSS_SELECTOR, element, details={"css_selector": selector}):
                return ""
        declarations, _ = self.process_declarations(
            tinycss2.parse_blocks_contents(rule.content, skip_comments=True, skip_whitespace=True),
            element, reporter
        )
        return f"{selector}{{{declarations}}}"

    def process_at_rule(self, rule, element: Tag, reporter: ValidationReporter) -> str:
        name = rule.lower_at_keyword
        prelude = compact(rule.prelude)
        head = f"@{rule.at_keyword}" + (f" {prelude}" if prelude else "")

        if name not in self.allowed_at_rules:
            if reporter.report(ErrorCode.DISALLOWED_CSS_AT_RULE, element, details={"at_rule": name}):
                return ""
            if rule.content is None:
                return head + ";"
            return f"{head}{{{tinycss2.serialize(rule.content).strip()}}}"

        if rule.content is None:
            return head + ";"
        if name in _RULE_LIST_AT_RULES or name.endswith("keyframes"):
            inner = self.process_rules(
                tinycss2.parse_rule_list(rule.content, skip_comments=True, skip_whitespace=True),
                element, reporter
            )
        else:
            inner, _ = self.process_declarations(
                tinycss2.parse_blocks_contents(rule.content, skip_comments=True, skip_whitespace=True),
                element, reporter
            )
        return f"{head}{{{inner}}}"

    def process_declarations(
        self,
        nodes,
        element: Tag,
        reporter: ValidationReporter,
        attribute: Optional[str] = None
    ) -> tuple[str, bool]:
        """
        Returns:
            Tuple of (compact declaration list, whether anything was removed)
        """
        css = self.rule_table.css
        parts = []
        changed = False

        for node in nodes:
            if node.type == "error":
                if reporter.report(
                    ErrorCode.CSS_SYNTAX_INVALID, element, attribute=attribute,
                    details={"kind": node.kind, "message": node.message}
                ):
                    changed = True
                continue

            if node.type in ("qualified-rule", "at-rule"):
                # Nested rules are only meaningful inside a stylesheet
                if attribute is None:
                    parts.append(self.process_rules([node], element, reporter))
                elif reporter.report(
                    ErrorCode.CSS_SYNTAX_INVALID, element, attribute=attribute,
                    details={"kind": "nested-rule", "message": "Rules are not allowed in a style attribute"}
                ):
                    changed = True
                continue

            if node.type != "declaration":
                continue

            value = compact(node.value)
            name = node.lower_name
            if (
                name in self.disallowed_properties
                or any(name.startswith(prefix) for prefix in css.disallowed_property_prefixes)
                or (self.disallowed_value is not None and self.disallowed_value.search(value))
            ):
                if reporter.report(
                    ErrorCode.DISALLOWED_CSS_PROPERTY, element, attribute=attribute,
                    details={"css_property_name": name, "css_property_value": value}
                ):
                    changed = True
                    continue

            important = node.important
            if important and not css.allow_important:
                if reporter.report(
                    ErrorCode.DISALLOWED_CSS_IMPORTANT, element, attribute=attribute,
                    details={"css_property_name": name, "css_property_value": value}
                ):
                    important = False
                    changed = True

            parts.append(f"{node.name}:{value}{'!important' if important else ''}")

        return ";".join(part for part in parts if part), changed

    # --- style="" ---

    def sanitize_style_attribute(self, element: Tag, reporter: ValidationReporter) -> Optional[str]:
        """
        Validate an inline style.

        The attribute is only rewritten when something was removed.  Returns
        the resulting value, or None when the attribute is gone.
        """
        value = element.get("style") or ""
        declarations = tinycss2.parse_blocks_contents(value, skip_comments=True, skip_whitespace=True)
        rewritten, changed = self.process_declarations(declarations, element, reporter, attribute="style")

        if not changed:
            return value
        if not rewritten:
            del element["style"]
            return None
        element["style"] = rewritten
        return rewritten

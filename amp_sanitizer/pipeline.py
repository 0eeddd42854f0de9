"""
Ordered sanitizer pipeline.

Order is fixed: the media converters run first so the allow-list sees
<amp-img> rather than <img>, and CSS/script/required-markup fixes happen
before the allow-list validates the result.

Pipeline position: between Document.from_html() and Document.serialize().
Input:  Document (+ optional SanitizationContext for attribution)
Output: the same Document, rewritten; ordered list of ValidationErrors
"""

from typing import Optional

from bs4 import Comment

from .allowlist_sanitizer import AllowListSanitizer
from .attribution import SourceAttributor, is_source_stack_comment
from .base_sanitizer import BaseSanitizer, ValidationReporter
from .document import Document
from .logger import get_module_logger
from .media_sanitizers import AudioSanitizer, IframeSanitizer, ImgSanitizer, VideoSanitizer
from .policy import AutoAcceptKnownSafe, SanitizePolicy
from .required_markup_sanitizer import RequiredMarkupSanitizer
from .rules import RuleTable
from .schemas import SanitizationContext, ValidationError
from .script_sanitizer import ScriptSanitizer
from .style_sanitizer import StyleSanitizer

logger = get_module_logger("pipeline")

DEFAULT_SANITIZERS = (
    ImgSanitizer,
    IframeSanitizer,
    VideoSanitizer,
    AudioSanitizer,
    StyleSanitizer,
    ScriptSanitizer,
    RequiredMarkupSanitizer,
    AllowListSanitizer,
)


class SanitizerPipeline:
    """
    Runs every sanitizer over a Document and collects their errors.

    Args:
        rule_table: Grammar the sanitizers validate against
        policy: Strip-or-keep decision per error
        attributor: Source attribution for errors
        sanitizers: Replacement sanitizer instances (default: DEFAULT_SANITIZERS)
        args: Extra arguments passed to each default sanitizer
    """

    def __init__(
        self,
        rule_table: RuleTable,
        policy: Optional[SanitizePolicy] = None,
        attributor: Optional[SourceAttributor] = None,
        sanitizers: Optional[list[BaseSanitizer]] = None,
        args: Optional[dict] = None
    ):
        self.rule_table = rule_table
        self.policy = policy or AutoAcceptKnownSafe()
        self.attributor = attributor or SourceAttributor()
        if sanitizers is None:
            sanitizers = [cls(rule_table, args) for cls in DEFAULT_SANITIZERS]
        self.sanitizers = list(sanitizers)

    def run(self, document: Document, context: Optional[SanitizationContext] = None) -> list[ValidationError]:
        """
        Sanitize `document` in place.

        Returns:
            Errors in document order of the offending node; errors on the same
            node follow pipeline order
        """
        reporter = ValidationReporter(document, self.policy, self.attributor, context)

        for index, sanitizer in enumerate(self.sanitizers):
            reporter.sanitizer_index = index
            sanitizer.sanitize(document, reporter)

        removed = strip_source_stack_comments(document)
        document.collapse_whitespace()
        errors = reporter.errors
        mark_amp(document, errors)

        logger.debug(
            f"Pipeline finished: {len(errors)} errors "
            f"({sum(1 for e in errors if e.sanitized)} sanitized), "
            f"{removed} source-stack comments stripped"
        )
        return errors


def strip_source_stack_comments(document: Document) -> int:
    comments = document.soup.find_all(string=lambda s: isinstance(s, Comment) and is_source_stack_comment(s))
    for comment in comments:
        comment.extract()
    return len(comments)


def mark_amp(document: Document, errors: list[ValidationError]) -> bool:
    """
    Flag the page as AMP when every error was sanitized, else unflag it.

    Returns:
        Whether the page is served as AMP
    """
    html = document.html
    if all(error.sanitized for error in errors):
        if not html.has_attr("amp") and not html.has_attr("⚡"):
            html["amp"] = ""
        return True

    for attribute in ("amp", "⚡"):
        if html.has_attr(attribute):
            del html[attribute]
    return False

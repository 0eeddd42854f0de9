"""
Generic allow-list sanitizer: the last and strictest pipeline unit.

For every element, in document order:
  1. Look up the tag's variants in the rule table; no variant → disallowed.
  2. Pick the variant the element fits best (fewest fatal mismatches, then
     fewest attribute mismatches, then table order).  A fatal mismatch
     (missing mandatory attribute, wrong parent or ancestor) means the tag
     itself is disallowed.
  3. Check each attribute against the variant, then against the global
     allow-list (data-*, aria-*, class, ...).  Event handlers never pass.
  4. Check the layout of AMP components.

Disallowed tags listed in remove_content_tags go with their subtree; other
disallowed tags are unwrapped so their content survives.  Nothing is
touched when the policy keeps the error.
"""

from dataclasses import dataclass, field
from typing import Optional

from bs4 import ProcessingInstruction, Tag

from .base_sanitizer import BaseSanitizer, ValidationReporter, attribute_values, has_ancestor
from .document import Document
from .layout import validate_layout
from .logger import get_module_logger
from .rules import TagSpec
from .schemas import ErrorCode

logger = get_module_logger("allowlist_sanitizer")

KEPT = "kept"
REMOVED = "removed"
UNWRAPPED = "unwrapped"


@dataclass
class SpecMatch:
    """How well one element fits one tag variant."""
    spec: TagSpec
    index: int
    missing_attributes: list = field(default_factory=list)
    invalid_mandatory: list = field(default_factory=list)
    structural: list = field(default_factory=list)      # parent/ancestor violations
    attribute_issues: list = field(default_factory=list)  # [(name, ErrorCode)]

    @property
    def fatal_count(self) -> int:
        return len(self.missing_attributes) + len(self.invalid_mandatory) + len(self.structural)

    def sort_key(self) -> tuple:
        return (self.fatal_count, len(self.attribute_issues), self.index)


class AllowListSanitizer(BaseSanitizer):
    name = "allowlist"

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        self.sanitize_processing_instructions(document, reporter)

        # Iterative pre-order walk; deep documents would exhaust recursion
        stack = [document.html]
        checked = 0
        while stack:
            element = stack.pop()
            if element.parent is None:
                continue
            children = [child for child in element.children if isinstance(child, Tag)]
            outcome = self.sanitize_element(element, reporter)
            checked += 1
            if outcome == REMOVED:
                continue
            stack.extend(reversed(children))

        logger.debug(f"Checked {checked} elements")

    def sanitize_processing_instructions(self, document: Document, reporter: ValidationReporter) -> None:
        for instruction in document.soup.find_all(string=lambda s: isinstance(s, ProcessingInstruction)):
            if reporter.report(
                ErrorCode.DISALLOWED_PROCESSING_INSTRUCTION, instruction,
                details={"text": str(instruction)[:100]}
            ):
                instruction.extract()

    def sanitize_element(self, element: Tag, reporter: ValidationReporter) -> str:
        if reporter.is_kept(element):
            return KEPT

        specs = self.rule_table.get_specs(element.name)
        if not specs:
            return self.handle_disallowed_tag(element, reporter, ErrorCode.DISALLOWED_TAG, {})

        match = self.best_match(element, specs)
        if match.fatal_count:
            details = {}
            if match.spec.spec_name:
                details["spec_name"] = match.spec.spec_name
            if match.missing_attributes:
                details["missing_attributes"] = match.missing_attributes
            if match.invalid_mandatory:
                details["invalid_attributes"] = match.invalid_mandatory
            if match.structural:
                details["reasons"] = match.structural

            # A single-variant tag whose only problem is a mandatory value
            # is reported at the attribute value
            if len(specs) == 1 and match.invalid_mandatory and not match.missing_attributes and not match.structural:
                code = ErrorCode.DISALLOWED_ATTRIBUTE_VALUE
            else:
                code = ErrorCode.DISALLOWED_TAG
            return self.handle_disallowed_tag(element, reporter, code, details)

        for attribute, code in match.attribute_issues:
            if reporter.is_kept(element, attribute):
                continue
            self.remove_invalid_attribute(reporter, element, attribute, code)

        if match.spec.layouts:
            reason = validate_layout(match.spec, attribute_values(element))
            if reason and self.remove_invalid_child(
                reporter, element, ErrorCode.INVALID_LAYOUT, details={"reason": reason}
            ):
                return REMOVED

        return KEPT

    def handle_disallowed_tag(self, element: Tag, reporter: ValidationReporter,
                              code: ErrorCode, details: dict) -> str:
        if not reporter.report(code, element, details=details):
            return KEPT
        if self.rule_table.removes_content(element.name):
            element.extract()
            return REMOVED
        element.unwrap()
        return UNWRAPPED

    def best_match(self, element: Tag, specs: list) -> SpecMatch:
        matches = [self.match_spec(element, spec, index) for index, spec in enumerate(specs)]
        return min(matches, key=SpecMatch.sort_key)

    def match_spec(self, element: Tag, spec: TagSpec, index: int) -> SpecMatch:
        match = SpecMatch(spec=spec, index=index)
        attrs = {name.lower(): value for name, value in attribute_values(element).items()}

        for name, attr_spec in spec.attrs.items():
            if not attr_spec.mandatory:
                continue
            if name not in attrs:
                match.missing_attributes.append(name)
            elif not attr_spec.is_valid_value(attrs[name]):
                match.invalid_mandatory.append(name)

        parent_name = self._parent_name(element)
        if spec.mandatory_parent and parent_name != spec.mandatory_parent:
            match.structural.append(f"mandatory_parent:{spec.mandatory_parent}")
        if spec.mandatory_ancestor and not has_ancestor(element, spec.mandatory_ancestor):
            match.structural.append(f"mandatory_ancestor:{spec.mandatory_ancestor}")
        for ancestor in spec.disallowed_ancestor:
            if has_ancestor(element, ancestor):
                match.structural.append(f"disallowed_ancestor:{ancestor}")

        for name, value in attrs.items():
            attr_spec = spec.attrs.get(name)
            if attr_spec is not None:
                if not attr_spec.mandatory and not attr_spec.is_valid_value(value):
                    match.attribute_issues.append((self._original_name(element, name), ErrorCode.DISALLOWED_ATTRIBUTE_VALUE))
            elif not (
                self.rule_table.is_global_attribute(name)
                or self.rule_table.is_component_attribute(element.name, name)
            ):
                match.attribute_issues.append((self._original_name(element, name), ErrorCode.DISALLOWED_ATTRIBUTE))

        return match

    @staticmethod
    def _parent_name(element: Tag) -> Optional[str]:
        parent = element.parent
        return parent.name if parent is not None else None

    @staticmethod
    def _original_name(element: Tag, lowered: str) -> str:
        for name in element.attrs:
            if name.lower() == lowered:
                return name
        return lowered

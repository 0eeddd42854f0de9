"""
Shared machinery for sanitizers.

ValidationReporter is created once per pipeline pass.  It is the only way a
sanitizer records an error, and it:
  - attributes the error to its sources at creation time,
  - asks the sanitize policy whether to strip (sanitized=True) or keep,
  - orders errors by document position of the offending node, then by
    sanitizer position in the pipeline, then by report order.

Sanitizers act on the reporter's answer: report() returning True means the
markup must be removed.
"""

from itertools import count
from typing import Optional

from bs4 import Tag

from .attribution import SourceAttributor, is_source_stack_comment
from .document import Document
from .logger import get_module_logger
from .policy import AutoAcceptKnownSafe, SanitizePolicy
from .rules import RuleTable
from .schemas import ErrorCode, ErrorType, SanitizationContext, ValidationError

logger = get_module_logger("base_sanitizer")

CSS_CODES = frozenset({
    ErrorCode.DISALLOWED_CSS_AT_RULE,
    ErrorCode.DISALLOWED_CSS_PROPERTY,
    ErrorCode.DISALLOWED_CSS_IMPORTANT,
    ErrorCode.DISALLOWED_CSS_SELECTOR,
    ErrorCode.CSS_SYNTAX_INVALID,
    ErrorCode.EXCESSIVE_CSS,
})


def attribute_values(element: Tag) -> dict[str, str]:
    return {
        name: " ".join(value) if isinstance(value, list) else str(value)
        for name, value in (element.attrs or {}).items()
    }


def has_ancestor(node, name: str) -> bool:
    return any(parent.name == name for parent in node.parents)


class ValidationReporter:
    """Records the ValidationErrors of one pass over one Document."""

    def __init__(
        self,
        document: Document,
        policy: Optional[SanitizePolicy] = None,
        attributor: Optional[SourceAttributor] = None,
        context: Optional[SanitizationContext] = None
    ):
        self.document = document
        self.policy = policy or AutoAcceptKnownSafe()
        self.attributor = attributor or SourceAttributor()
        self.context = context
        self.sanitizer_index = 0
        self._sequence = count()
        self._records = []
        self._kept_nodes = {}

        # Document-order snapshot.  Removed nodes keep their position; nodes
        # created later borrow the position of their nearest known ancestor.
        self._positions = {}
        self._known_nodes = []
        self._has_source_comments = False
        for position, node in enumerate(document.soup.descendants):
            self._positions[id(node)] = position
            self._known_nodes.append(node)
            if not self._has_source_comments and is_source_stack_comment(node):
                self._has_source_comments = True

    def position_of(self, node) -> int:
        current = node
        while current is not None:
            position = self._positions.get(id(current))
            if position is not None:
                return position
            current = current.parent
        return len(self._positions)

    def report(
        self,
        code: ErrorCode,
        node: Tag,
        attribute: Optional[str] = None,
        error_type: Optional[ErrorType] = None,
        details: Optional[dict] = None
    ) -> bool:
        """
        Record an error about `node` (or one of its attributes).

        Returns:
            True when the policy decided the markup is to be removed
        """
        if attribute is not None:
            value = node.get(attribute, "")
            error = ValidationError(
                code=code,
                type=error_type or self._error_type(code, attribute=attribute),
                node_name=attribute,
                node_attributes={attribute: " ".join(value) if isinstance(value, list) else str(value)},
                parent_name=node.name,
                details=details or {},
            )
        else:
            parent = node.parent
            # Processing instructions and other non-elements have no tag name
            node_name = node.name if isinstance(node, Tag) else f"#{type(node).__name__.lower()}"
            error = ValidationError(
                code=code,
                type=error_type or self._error_type(code, tag=node_name),
                node_name=node_name,
                node_attributes=attribute_values(node) if isinstance(node, Tag) else {},
                parent_name=parent.name if parent is not None and parent.name != "[document]" else None,
                details=details or {},
            )

        error.sources = self.attributor.attribute(
            self.context, node if self._has_source_comments else None
        )
        error.sanitized = self.policy.decide(error)

        logger.debug(
            f"{code.value} on <{error.parent_name if attribute else error.node_name}>"
            f"{' @' + attribute if attribute else ''}: "
            f"{'sanitized' if error.sanitized else 'kept'}"
        )
        self._records.append((self.position_of(node), self.sanitizer_index, next(self._sequence), error))
        if not error.sanitized:
            self._kept_nodes[(id(node), attribute)] = node
        return error.sanitized

    def is_kept(self, node, attribute: Optional[str] = None) -> bool:
        """True if this element (or attribute) was already reported and kept."""
        return (id(node), attribute) in self._kept_nodes

    @property
    def errors(self) -> list[ValidationError]:
        return [record[3] for record in sorted(self._records, key=lambda r: r[:3])]

    @staticmethod
    def _error_type(code: ErrorCode, tag: Optional[str] = None, attribute: Optional[str] = None) -> ErrorType:
        if code in CSS_CODES:
            return ErrorType.CSS
        if attribute is not None:
            if attribute.lower().startswith("on"):
                return ErrorType.JS
            return ErrorType.HTML_ATTRIBUTE
        if tag == "script":
            return ErrorType.JS
        return ErrorType.HTML_ELEMENT


class BaseSanitizer:
    """
    One unit of the sanitizer pipeline.

    Subclasses implement sanitize() and mutate the Document in place,
    reporting every deviation through the reporter.  A sanitizer holds no
    per-request state: the same instance serves every pass.
    """

    name = "base"
    DEFAULT_ARGS: dict = {}

    def __init__(self, rule_table: RuleTable, args: Optional[dict] = None):
        self.rule_table = rule_table
        self.args = {**self.DEFAULT_ARGS, **(args or {})}

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        raise NotImplementedError

    def remove_invalid_child(
        self,
        reporter: ValidationReporter,
        node: Tag,
        code: ErrorCode = ErrorCode.DISALLOWED_TAG,
        details: Optional[dict] = None
    ) -> bool:
        """Report `node` and remove it (with its subtree) if the policy agrees."""
        if reporter.report(code, node, details=details):
            node.extract()
            return True
        return False

    def remove_invalid_attribute(
        self,
        reporter: ValidationReporter,
        element: Tag,
        attribute: str,
        code: ErrorCode = ErrorCode.DISALLOWED_ATTRIBUTE,
        details: Optional[dict] = None
    ) -> bool:
        """Report one attribute and delete it if the policy agrees."""
        if reporter.report(code, element, attribute=attribute, details=details):
            del element[attribute]
            return True
        return False

    def __repr__(self):
        return f"{self.__class__.__name__}()"

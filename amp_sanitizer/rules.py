"""
Rule Table: the versioned allow-list grammar every sanitizer validates against.

The bundled table lives in data/amp_rules.json and is loaded into pydantic
models so a malformed table fails at construction time (RuleTableError)
rather than halfway through a request.
"""

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .exceptions import RuleTableError
from .logger import get_module_logger

logger = get_module_logger("rules")

DEFAULT_RULES_PATH = Path(__file__).parent / "data" / "amp_rules.json"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


class AttrSpec(BaseModel):
    """Constraints on one attribute of one tag variant."""
    mandatory: bool = False
    value: Optional[str] = None                    # exact, case-insensitive
    values: Optional[list[str]] = None             # enumeration, case-insensitive
    value_regex: Optional[str] = None              # must match the whole value
    blacklisted_value_regex: Optional[str] = None  # must not match anywhere
    allowed_protocols: Optional[list[str]] = None  # for URL-valued attributes
    allow_empty: bool = True

    def is_valid_value(self, value: Optional[str]) -> bool:
        value = "" if value is None else value
        stripped = value.strip()

        if self.value is not None and stripped.lower() != self.value.lower():
            return False
        if self.values is not None and stripped.lower() not in {v.lower() for v in self.values}:
            return False
        if self.value_regex is not None and not _compile(self.value_regex).fullmatch(stripped):
            return False
        if self.blacklisted_value_regex is not None and _compile(self.blacklisted_value_regex).search(value):
            return False
        if self.allowed_protocols is not None:
            if not stripped:
                return self.allow_empty
            if not self._has_allowed_protocol(stripped):
                return False
        return True

    def _has_allowed_protocol(self, url: str) -> bool:
        # Every candidate of a srcset counts, not just the first
        for candidate in url.split(","):
            candidate = candidate.strip().split(" ")[0]
            match = re.match(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):", candidate)
            if match and match.group(1).lower() not in self.allowed_protocols:
                return False
        return True


class TagSpec(BaseModel):
    """One accepted shape of a tag (a tag may have several variants)."""
    spec_name: Optional[str] = None
    attrs: dict[str, AttrSpec] = Field(default_factory=dict)
    mandatory_ancestor: Optional[str] = None
    mandatory_parent: Optional[str] = None
    disallowed_ancestor: list[str] = Field(default_factory=list)
    requires_extension: Optional[str] = None
    layouts: list[str] = Field(default_factory=list)

    def mandatory_attrs(self) -> list[str]:
        return [name for name, spec in self.attrs.items() if spec.mandatory]


class CssSpec(BaseModel):
    max_bytes: int = 50000
    allowed_at_rules: list[str] = Field(default_factory=list)
    disallowed_properties: list[str] = Field(default_factory=list)
    disallowed_property_prefixes: list[str] = Field(default_factory=list)
    disallowed_value_regex: Optional[str] = None
    disallowed_selector_regex: Optional[str] = None
    allow_important: bool = False
    allowed_font_providers: list[str] = Field(default_factory=list)


class RuleTable(BaseModel):
    """
    Allowed tags, attributes, layouts and CSS constructs.

    `version` takes part in the response-cache fingerprint, so shipping a new
    table invalidates every cached response.
    """
    version: str
    global_attrs: list[str] = Field(default_factory=list)
    global_attr_prefixes: list[str] = Field(default_factory=list)
    component_attrs: list[str] = Field(default_factory=list)   # layout attributes of amp-* tags
    remove_content_tags: list[str] = Field(default_factory=list)
    tags: dict[str, list[TagSpec]] = Field(default_factory=dict)
    css: CssSpec = Field(default_factory=CssSpec)
    runtime_src: str = "https://cdn.ampproject.org/v0.js"
    extension_src_template: str = "https://cdn.ampproject.org/v0/{name}-{version}.js"
    extension_versions: dict[str, str] = Field(default_factory=dict)
    custom_template_extensions: list[str] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "RuleTable":
        """
        Load a rule table from JSON.

        Args:
            path: Custom table location; the bundled table when None

        Raises:
            RuleTableError: If the file cannot be read or does not validate
        """
        rules_path = Path(path) if path else DEFAULT_RULES_PATH
        try:
            with open(rules_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RuleTableError(f"Cannot read rule table: {e}", path=str(rules_path))

        try:
            table = cls.model_validate(data)
        except PydanticValidationError as e:
            raise RuleTableError(
                "Rule table does not validate",
                path=str(rules_path),
                details={"errors": e.errors(include_url=False)},
            )

        for name, variants in table.tags.items():
            if not variants:
                raise RuleTableError(f"Tag '{name}' has no variants", path=str(rules_path))

        logger.debug(f"Loaded rule table {table.version} ({len(table.tags)} tags) from {rules_path}")
        return table

    def get_specs(self, tag: str) -> list[TagSpec]:
        """Variants for a tag name, in table order (empty when disallowed)."""
        return self.tags.get(tag.lower(), [])

    def is_global_attribute(self, name: str) -> bool:
        name = name.lower()
        if name.startswith("on") and len(name) > 2:
            # Event handlers are never allowed, whatever the prefixes say
            return False
        if name in self.global_attrs:
            return True
        return any(name.startswith(prefix) for prefix in self.global_attr_prefixes)

    def is_component_attribute(self, tag: str, name: str) -> bool:
        return tag.lower().startswith("amp-") and name.lower() in self.component_attrs

    def removes_content(self, tag: str) -> bool:
        return tag.lower() in self.remove_content_tags

    def extension_src(self, name: str) -> str:
        version = self.extension_versions.get(name, "0.1")
        return self.extension_src_template.format(name=name, version=version)

    def extension_attribute(self, name: str) -> str:
        """custom-template for template extensions, custom-element otherwise."""
        return "custom-template" if name in self.custom_template_extensions else "custom-element"

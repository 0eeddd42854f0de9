"""
AMP script management.

  - The same external script enqueued twice (same src and attributes) is
    reduced to its first occurrence, silently.  So is a second script for an
    extension that is already loaded.
  - The runtime and every extension/template script move to <head>, runtime
    first, ahead of any other script there.
  - Components in use get their extension script when it is missing
    (amp-bind for bound attributes, amp-mustache for templates), and the
    runtime is always present.
"""

from bs4 import Tag

from .base_sanitizer import BaseSanitizer, ValidationReporter, has_ancestor
from .document import BIND_ATTRIBUTE_PREFIX, Document
from .logger import get_module_logger

logger = get_module_logger("script_sanitizer")

EXTENSION_ATTRIBUTES = ("custom-element", "custom-template")


class ScriptSanitizer(BaseSanitizer):
    name = "script"

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        self.remove_duplicate_scripts(document)

        runtime = None
        extensions = {}
        group = []
        for script in document.soup.find_all("script"):
            if has_ancestor(script, "noscript"):
                continue
            if self.is_runtime(script):
                if runtime is None:
                    runtime = script
                    group.append(script)
                continue
            name = self.extension_name(script)
            if name:
                extensions[name] = script
                group.append(script)

        added = []
        if runtime is None:
            runtime = document.create_element("script", {"async": "", "src": self.rule_table.runtime_src})
            added.append("runtime")

        missing = sorted(self.required_extensions(document) - set(extensions))
        new_scripts = []
        for name in missing:
            new_scripts.append(document.create_element("script", {
                "async": "",
                self.rule_table.extension_attribute(name): name,
                "src": self.rule_table.extension_src(name),
            }))
        added.extend(missing)

        ordered = [runtime] + [script for script in group if script is not runtime] + new_scripts
        self.place_in_head(document, group, ordered)

        if added:
            logger.debug(f"Added scripts: {', '.join(added)}")

    def is_runtime(self, script: Tag) -> bool:
        return (script.get("src") or "").strip() == self.rule_table.runtime_src

    def extension_name(self, script: Tag) -> str:
        if not (script.get("src") or "").strip():
            return ""
        for attribute in EXTENSION_ATTRIBUTES:
            value = (script.get(attribute) or "").strip().lower()
            if value:
                return value
        return ""

    def remove_duplicate_scripts(self, document: Document) -> int:
        """Keep the first of each (src, attributes) signature and of each extension."""
        seen_signatures = set()
        seen_extensions = set()
        removed = 0
        for script in document.soup.find_all("script", src=True):
            src = (script.get("src") or "").strip()
            signature = (src, tuple(sorted(
                (name, str(value)) for name, value in script.attrs.items() if name != "src"
            )))
            extension = self.extension_name(script)
            if signature in seen_signatures or (extension and extension in seen_extensions):
                script.extract()
                removed += 1
                continue
            seen_signatures.add(signature)
            if extension:
                seen_extensions.add(extension)

        if removed:
            logger.debug(f"Removed {removed} duplicate scripts")
        return removed

    def required_extensions(self, document: Document) -> set:
        required = set()
        for element in document.soup.find_all(True):
            name = element.name
            if name == "template":
                if (element.get("type") or "").strip().lower() == "amp-mustache":
                    required.add("amp-mustache")
            elif name == "script":
                if (element.get("template") or "").strip().lower() == "amp-mustache":
                    required.add("amp-mustache")
            else:
                for spec in self.rule_table.get_specs(name):
                    if spec.requires_extension:
                        required.add(spec.requires_extension)
                        break
            if any(attr.lower().startswith(BIND_ATTRIBUTE_PREFIX) for attr in element.attrs):
                required.add("amp-bind")
        return required

    def place_in_head(self, document: Document, group: list, ordered: list) -> None:
        """
        Put `ordered` into <head> as one run, ahead of any other script.

        The run takes the place of the first script already in <head>, so a
        document that is already in order keeps its layout.
        """
        head = document.head
        members = {id(script) for script in group}
        first_script = next(
            (child for child in head.children if isinstance(child, Tag) and child.name == "script"),
            None
        )

        anchor = None
        before = None
        if first_script is not None and id(first_script) in members:
            anchor = first_script.previous_sibling
            while anchor is not None and id(anchor) in members:
                anchor = anchor.previous_sibling
        elif first_script is not None:
            before = first_script

        for script in group:
            script.extract()

        if before is not None:
            for script in ordered:
                before.insert_before(script)
        elif anchor is not None:
            for script in reversed(ordered):
                anchor.insert_after(script)
        elif first_script is not None:
            for script in reversed(ordered):
                head.insert(0, script)
        else:
            for script in ordered:
                head.append(script)

"""
AMP layout validation.

Components (amp-img, amp-iframe, ...) declare their box through the
layout / width / height attributes.  validate_layout() computes the layout
the runtime would use and reports why it is unusable, if it is.
"""

import re
from typing import Optional

from .rules import TagSpec

KNOWN_LAYOUTS = (
    "nodisplay", "fixed", "fixed-height", "responsive", "container",
    "fill", "flex-item", "fluid", "intrinsic",
)

_LENGTH = re.compile(r"^(?P<numeral>\d+(?:\.\d+)?)(?P<unit>px|em|rem|vh|vw|vmin|vmax)?$")


class CssLength:
    """A width or height attribute value (unset, auto, fluid or a length)."""

    def __init__(self, value: Optional[str]):
        self.value = value
        self.is_set = value is not None and value != ""
        # An unset length is valid: layout decides whether it is needed
        self.is_valid = not self.is_set
        self.is_auto = False
        self.is_fluid = False
        self.numeral = 0.0
        self.unit = "px"

    def validate(self, allow_auto: bool, allow_fluid: bool) -> "CssLength":
        if not self.is_set:
            return self
        value = self.value.strip()

        if value == "auto":
            self.is_auto = True
            self.is_valid = allow_auto
            return self
        if value == "fluid":
            self.is_fluid = True
            self.is_valid = allow_fluid
            return self

        match = _LENGTH.match(value)
        if match:
            self.is_valid = True
            self.numeral = float(match.group("numeral"))
            self.unit = match.group("unit") or "px"
        return self

    def __repr__(self):
        return f"CssLength({self.value!r})"


def calculate_layout(layout: Optional[str], width: CssLength, height: CssLength,
                     sizes: Optional[str], heights: Optional[str]) -> str:
    """The layout the runtime infers when none (or a valid one) is given."""
    if layout:
        return layout
    if not width.is_set and not height.is_set:
        return "container"
    if height.is_set and (not width.is_set or width.is_auto):
        return "fixed-height"
    if height.is_set and width.is_set and (sizes or heights):
        return "responsive"
    return "fixed"


def validate_layout(spec: TagSpec, attrs: dict) -> Optional[str]:
    """
    Check the layout attributes of a component against its tag spec.

    Args:
        spec: The matched tag variant (its `layouts` lists what is supported)
        attrs: Attributes of the element

    Returns:
        A short reason when the layout is invalid, None when it is fine
    """
    if not spec.layouts:
        return None

    layout = (attrs.get("layout") or "").strip().lower() or None
    if layout is not None and layout not in KNOWN_LAYOUTS:
        return f"unknown layout '{layout}'"

    width = CssLength(attrs.get("width")).validate(allow_auto=True, allow_fluid=False)
    if not width.is_valid:
        return f"invalid width '{attrs.get('width')}'"

    height = CssLength(attrs.get("height")).validate(allow_auto=True, allow_fluid=layout == "fluid")
    if not height.is_valid:
        return f"invalid height '{attrs.get('height')}'"

    effective = calculate_layout(layout, width, height, attrs.get("sizes"), attrs.get("heights"))
    if effective not in spec.layouts:
        return f"layout '{effective}' not supported"

    if effective == "fixed":
        if not width.is_set or not height.is_set:
            return "fixed layout requires width and height"
        if width.is_auto or height.is_auto:
            return "fixed layout does not allow auto"
    elif effective == "fixed-height":
        if not height.is_set or height.is_auto:
            return "fixed-height layout requires height"
        if width.is_set and not width.is_auto:
            return "fixed-height layout requires width auto or unset"
    elif effective in ("responsive", "intrinsic"):
        if not width.is_set or not height.is_set or width.is_auto or height.is_auto:
            return f"{effective} layout requires width and height"
        if width.unit != height.unit:
            return f"{effective} layout requires matching width and height units"

    if attrs.get("heights") and effective != "responsive":
        return "heights requires responsive layout"

    return None

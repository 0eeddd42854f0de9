"""
Raw embed → AMP component conversion.

These run before the allow-list sanitizer so the converted components are
validated in their final form:
  <img>    → <amp-img>
  <iframe> → <amp-iframe>
  <video>  → <amp-video>
  <audio>  → <amp-audio>

The layout comes from the element's dimensions: intrinsic when width and
height are both usable lengths, otherwise a fallback that renders without
knowing the size.  The original element is kept in a <noscript> inside the
component unless that is disabled.

Elements already inside <noscript> are fallbacks themselves and are left
alone.
"""

import copy
from typing import Optional

from bs4 import Tag

from .base_sanitizer import BaseSanitizer, ValidationReporter, has_ancestor
from .document import Document
from .layout import CssLength
from .logger import get_module_logger
from .schemas import ErrorCode

logger = get_module_logger("media_sanitizers")


def upgrade_to_https(url: str) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if url.lower().startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def has_usable_dimensions(width: Optional[str], height: Optional[str]) -> bool:
    """Both set, both plain lengths, same unit."""
    width_length = CssLength(width).validate(allow_auto=False, allow_fluid=False)
    height_length = CssLength(height).validate(allow_auto=False, allow_fluid=False)
    return (
        width_length.is_set and width_length.is_valid
        and height_length.is_set and height_length.is_valid
        and width_length.unit == height_length.unit
    )


class MediaConversionSanitizer(BaseSanitizer):
    """
    Converts one kind of raw media element to its AMP component.

    Subclasses set `tag` / `amp_tag` and refine the attribute mapping and the
    fallback layout.
    """

    tag = ""
    amp_tag = ""
    # Attributes dropped without a report: AMP handles what they ask for
    dropped_attributes: frozenset = frozenset()
    # Child elements carried into the component
    carried_children: frozenset = frozenset()

    DEFAULT_ARGS = {"add_noscript_fallback": True}

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        converted = 0
        for element in document.body.find_all(self.tag):
            if has_ancestor(element, "noscript"):
                continue
            if self.is_missing_source(element):
                self.remove_invalid_child(
                    reporter, element, details={"missing_attributes": ["src"]}
                )
                continue
            self.convert(document, element)
            converted += 1

        if converted:
            logger.debug(f"Converted {converted} <{self.tag}> to <{self.amp_tag}>")

    def is_missing_source(self, element: Tag) -> bool:
        return not (element.get("src") or "").strip()

    def convert(self, document: Document, element: Tag) -> Tag:
        fallback = copy.copy(element)

        attrs = {}
        for name, value in element.attrs.items():
            if name.lower() in self.dropped_attributes:
                continue
            attrs[name] = value
        attrs = self.map_attributes(attrs)
        self.apply_layout(attrs)

        component = document.create_element(self.amp_tag, attrs)
        for child in list(element.children):
            if isinstance(child, Tag) and child.name in self.carried_children:
                component.append(self.map_child(child.extract()))

        if self.args["add_noscript_fallback"] and not has_ancestor(element, "template"):
            noscript = document.create_element("noscript")
            noscript.append(fallback)
            component.append(noscript)

        element.replace_with(component)
        return component

    def map_attributes(self, attrs: dict) -> dict:
        return attrs

    def map_child(self, child: Tag) -> Tag:
        return child

    def apply_layout(self, attrs: dict) -> None:
        if has_usable_dimensions(attrs.get("width"), attrs.get("height")):
            attrs["layout"] = "intrinsic"
        else:
            self.apply_fallback_layout(attrs)

    def apply_fallback_layout(self, attrs: dict) -> None:
        attrs.pop("width", None)
        attrs.pop("height", None)
        attrs["layout"] = "fill"


class ImgSanitizer(MediaConversionSanitizer):
    name = "img"
    tag = "img"
    amp_tag = "amp-img"
    dropped_attributes = frozenset({"loading", "decoding"})

    def apply_fallback_layout(self, attrs: dict) -> None:
        super().apply_fallback_layout(attrs)
        classes = (attrs.get("class") or "").split()
        if "amp-wp-unknown-size" not in classes:
            classes.append("amp-wp-unknown-size")
        attrs["class"] = " ".join(classes)


class IframeSanitizer(MediaConversionSanitizer):
    name = "iframe"
    tag = "iframe"
    amp_tag = "amp-iframe"
    dropped_attributes = frozenset({"loading", "marginwidth", "marginheight"})

    DEFAULT_ARGS = {
        "add_noscript_fallback": True,
        "default_sandbox": "allow-scripts allow-same-origin",
        "fallback_height": "400",
    }

    def is_missing_source(self, element: Tag) -> bool:
        return super().is_missing_source(element) and not element.get("srcdoc")

    def map_attributes(self, attrs: dict) -> dict:
        if attrs.get("src"):
            attrs["src"] = upgrade_to_https(attrs["src"])

        frameborder = attrs.get("frameborder")
        if frameborder is not None:
            attrs["frameborder"] = "0" if frameborder.strip().lower() in ("0", "no", "") else "1"

        if "sandbox" not in attrs:
            attrs["sandbox"] = self.args["default_sandbox"]
        return attrs

    def apply_fallback_layout(self, attrs: dict) -> None:
        attrs["width"] = "auto"
        attrs["height"] = self.args["fallback_height"]
        attrs["layout"] = "fixed-height"


class VideoSanitizer(MediaConversionSanitizer):
    name = "video"
    tag = "video"
    amp_tag = "amp-video"
    dropped_attributes = frozenset({"playsinline"})
    carried_children = frozenset({"source", "track"})

    DEFAULT_ARGS = {"add_noscript_fallback": True, "fallback_height": "400"}

    def is_missing_source(self, element: Tag) -> bool:
        return super().is_missing_source(element) and element.find("source", src=True) is None

    def map_attributes(self, attrs: dict) -> dict:
        if attrs.get("src"):
            attrs["src"] = upgrade_to_https(attrs["src"])
        return attrs

    def map_child(self, child: Tag) -> Tag:
        if child.get("src"):
            child["src"] = upgrade_to_https(child["src"])
        return child

    def apply_fallback_layout(self, attrs: dict) -> None:
        attrs["width"] = "auto"
        attrs["height"] = self.args["fallback_height"]
        attrs["layout"] = "fixed-height"


class AudioSanitizer(VideoSanitizer):
    name = "audio"
    tag = "audio"
    amp_tag = "amp-audio"
    dropped_attributes = frozenset({"controls"})

    DEFAULT_ARGS = {"add_noscript_fallback": True, "fallback_height": "50"}

    def apply_layout(self, attrs: dict) -> None:
        # Audio players are always a bar of fixed height
        self.apply_fallback_layout(attrs)

"""
Markup every AMP page must carry in <head>: the viewport meta and the
boilerplate styles that hide the page until the runtime has laid it out.
"""

from bs4 import Stylesheet

from .base_sanitizer import BaseSanitizer, ValidationReporter
from .document import Document

BOILERPLATE_CSS = (
    "body{-webkit-animation:-amp-start 8s steps(1,end) 0s 1 normal both;"
    "-moz-animation:-amp-start 8s steps(1,end) 0s 1 normal both;"
    "-ms-animation:-amp-start 8s steps(1,end) 0s 1 normal both;"
    "animation:-amp-start 8s steps(1,end) 0s 1 normal both}"
    "@-webkit-keyframes -amp-start{from{visibility:hidden}to{visibility:visible}}"
    "@-moz-keyframes -amp-start{from{visibility:hidden}to{visibility:visible}}"
    "@-ms-keyframes -amp-start{from{visibility:hidden}to{visibility:visible}}"
    "@-o-keyframes -amp-start{from{visibility:hidden}to{visibility:visible}}"
    "@keyframes -amp-start{from{visibility:hidden}to{visibility:visible}}"
)

NOSCRIPT_BOILERPLATE_CSS = (
    "body{-webkit-animation:none;-moz-animation:none;-ms-animation:none;animation:none}"
)


class RequiredMarkupSanitizer(BaseSanitizer):
    name = "required_markup"

    DEFAULT_ARGS = {"viewport_content": "width=device-width"}

    def sanitize(self, document: Document, reporter: ValidationReporter) -> None:
        head = document.head

        if head.find("meta", attrs={"name": "viewport"}, recursive=False) is None:
            viewport = document.create_element(
                "meta", {"name": "viewport", "content": self.args["viewport_content"]}
            )
            charset = head.find("meta", charset=True, recursive=False)
            if charset is not None:
                charset.insert_after(viewport)
            else:
                head.insert(0, viewport)

        if not any(style.has_attr("amp-boilerplate") for style in head.find_all("style")):
            style = document.create_element("style", {"amp-boilerplate": ""})
            style.string = Stylesheet(BOILERPLATE_CSS)
            noscript = document.create_element("noscript")
            noscript_style = document.create_element("style", {"amp-boilerplate": ""})
            noscript_style.string = Stylesheet(NOSCRIPT_BOILERPLATE_CSS)
            noscript.append(noscript_style)
            head.append(style)
            head.append(noscript)

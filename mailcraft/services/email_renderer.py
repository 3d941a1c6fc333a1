"""Turns author-supplied HTML into a Gmail-ready raw message.

The pipeline runs four steps, each usable on its own:

1. ``normalize_document`` wraps fragments in a complete HTML document.
2. ``inline_css`` copies ``<style>`` rules onto matching elements and drops
   the style blocks. At-rules (``@media``, ``@font-face``, ``@keyframes``)
   and pseudo selectors are discarded since most mail clients ignore them.
3. ``apply_compatibility_rewrites`` applies Outlook/Gmail friendly fixes.
   Running it on its own output changes nothing.
4. ``build_raw_message`` prepends the RFC 5322 headers and encodes the
   result as unpadded base64url, the form Gmail's ``messages.send`` expects.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field

import tinycss2
from bs4 import BeautifulSoup
from bs4.element import Tag
from soupsieve import SelectorSyntaxError

logger = logging.getLogger(__name__)

_DOCTYPE_PATTERN = re.compile(r"^\s*<!doctype[^>]*>\s*", re.IGNORECASE)
_UNITLESS_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_ATTRIBUTE_SELECTOR = re.compile(r"\[[^\]]*\]")
_ID_SELECTOR = re.compile(r"#[\w-]+")
_CLASS_SELECTOR = re.compile(r"\.[\w-]+")
_COMBINATORS = re.compile(r"[\s>+~]+")

DOCUMENT_TEMPLATE = """<!doctype html>
<html>
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title></title>
</head>
<body>
{body}
</body>
</html>"""

IMAGE_DECLARATIONS: tuple[tuple[str, str], ...] = (
    ("display", "block"),
    ("border", "0"),
    ("outline", "none"),
    ("text-decoration", "none"),
)
# These tend to break layouts in Outlook rather than degrade.
STRIPPED_PROPERTIES = frozenset({"box-shadow", "text-shadow", "transform"})
_NON_RENDERED_TAGS = frozenset({"head", "meta", "title", "style", "link", "script", "base"})

Declaration = tuple[str, str, bool]


@dataclass(frozen=True)
class MessageHeaders:
    to: list[str]
    from_email: str
    subject: str
    from_name: str | None = None
    reply_to: str | None = None


@dataclass(frozen=True)
class RenderedMessage:
    raw_base64url: str
    html: str


@dataclass(frozen=True)
class _CssRule:
    selector: str
    specificity: tuple[int, int, int]
    order: int
    declarations: list[Declaration] = field(default_factory=list)


class EmailRenderer:
    def render_html(self, html_body: str) -> str:
        document = normalize_document(html_body)
        return apply_compatibility_rewrites(inline_css(document))

    def render(self, html_body: str, headers: MessageHeaders) -> RenderedMessage:
        html = self.render_html(html_body)
        return RenderedMessage(raw_base64url=build_raw_message(html, headers), html=html)


def normalize_document(html: str) -> str:
    lowered = (html or "").lstrip().lower()
    if lowered.startswith("<!doctype") or lowered.startswith("<html"):
        return html
    return DOCUMENT_TEMPLATE.format(body=html or "")


def inline_css(html: str) -> str:
    prefix, soup = _parse(html)
    rules = _collect_rules(soup)
    cascaded: dict[int, tuple[Tag, dict[str, tuple[str, bool]]]] = {}

    for rule in sorted(rules, key=lambda item: (item.specificity, item.order)):
        try:
            elements = soup.select(rule.selector)
        except (SelectorSyntaxError, NotImplementedError):
            logger.debug("Skipping unsupported selector %r", rule.selector)
            continue
        for element in elements:
            if element.name in _NON_RENDERED_TAGS:
                continue
            props = cascaded.setdefault(id(element), (element, {}))[1]
            for name, value, important in rule.declarations:
                current = props.get(name)
                if current is not None and current[1] and not important:
                    continue
                props[name] = (value, important)

    for element, props in cascaded.values():
        for name, value, important in parse_declarations(element.get("style") or ""):
            current = props.get(name)
            if current is not None and current[1] and not important:
                continue
            props[name] = (value, important)
        element["style"] = serialize_declarations(
            [(name, value, important) for name, (value, important) in props.items()]
        )

    for style_tag in soup.find_all("style"):
        style_tag.decompose()
    return prefix + str(soup)


def apply_compatibility_rewrites(html: str) -> str:
    prefix, soup = _parse(html)

    for table in soup.find_all("table"):
        if table.has_attr("cellpadding"):
            continue
        table["cellpadding"] = "0"
        if not table.has_attr("cellspacing"):
            table["cellspacing"] = "0"
        if not table.has_attr("border"):
            table["border"] = "0"

    for element in soup.find_all(True):
        raw_style = element.get("style")
        if raw_style is None and element.name != "img":
            continue
        declarations = parse_declarations(raw_style or "")
        rewritten = _rewrite_declarations(declarations, is_image=element.name == "img")
        if rewritten == declarations:
            continue
        if rewritten:
            element["style"] = serialize_declarations(rewritten)
        else:
            del element["style"]

    return prefix + str(soup)


def build_raw_message(html: str, headers: MessageHeaders) -> str:
    sender = (
        f"{headers.from_name} <{headers.from_email}>" if headers.from_name else headers.from_email
    )
    lines = [
        f"To: {', '.join(headers.to)}",
        f"From: {sender}",
        f"Subject: {headers.subject}",
    ]
    if headers.reply_to:
        lines.append(f"Reply-To: {headers.reply_to}")
    lines.extend(
        [
            "MIME-Version: 1.0",
            "Content-Type: text/html; charset=UTF-8",
            "",
            html,
        ]
    )
    raw = "\r\n".join(lines).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def parse_declarations(css: str) -> list[Declaration]:
    out: list[Declaration] = []
    for item in tinycss2.parse_declaration_list(css, skip_comments=True, skip_whitespace=True):
        if item.type != "declaration":
            continue
        value = tinycss2.serialize(item.value).strip()
        if value:
            out.append((item.lower_name, value, item.important))
    return out


def serialize_declarations(declarations: list[Declaration]) -> str:
    return "".join(
        f"{name}:{value}{' !important' if important else ''};"
        for name, value, important in declarations
    )


def selector_specificity(selector: str) -> tuple[int, int, int]:
    attributes = len(_ATTRIBUTE_SELECTOR.findall(selector))
    remainder = _ATTRIBUTE_SELECTOR.sub("", selector)
    ids = len(_ID_SELECTOR.findall(remainder))
    classes = len(_CLASS_SELECTOR.findall(remainder))
    remainder = _CLASS_SELECTOR.sub("", _ID_SELECTOR.sub("", remainder))
    types = sum(
        1 for compound in _COMBINATORS.split(remainder) if compound[:1].isalpha()
    )
    return (ids, classes + attributes, types)


def _parse(html: str) -> tuple[str, BeautifulSoup]:
    # html.parser mangles lowercase doctypes, so the declaration bypasses it.
    match = _DOCTYPE_PATTERN.match(html or "")
    prefix = match.group(0) if match else ""
    return prefix, BeautifulSoup((html or "")[len(prefix) :], "html.parser")


def _collect_rules(soup: BeautifulSoup) -> list[_CssRule]:
    rules: list[_CssRule] = []
    order = 0
    for style_tag in soup.find_all("style"):
        css = style_tag.get_text()
        for node in tinycss2.parse_stylesheet(css, skip_comments=True, skip_whitespace=True):
            if node.type != "qualified-rule":
                continue
            order += 1
            declarations = parse_declarations(tinycss2.serialize(node.content))
            if not declarations:
                continue
            for selector in tinycss2.serialize(node.prelude).split(","):
                selector = selector.strip()
                # Pseudo classes and elements have no inline equivalent.
                if not selector or ":" in _ATTRIBUTE_SELECTOR.sub("", selector):
                    continue
                rules.append(
                    _CssRule(
                        selector=selector,
                        specificity=selector_specificity(selector),
                        order=order,
                        declarations=declarations,
                    )
                )
    return rules


def _rewrite_declarations(declarations: list[Declaration], is_image: bool) -> list[Declaration]:
    image_names = {name for name, _ in IMAGE_DECLARATIONS}
    has_line_height_rule = any(name == "mso-line-height-rule" for name, _, _ in declarations)
    out: list[Declaration] = []
    for name, value, important in declarations:
        if name in STRIPPED_PROPERTIES:
            continue
        if is_image and name in image_names:
            continue
        out.append((name, value, important))
        if name == "line-height" and not has_line_height_rule and _UNITLESS_NUMBER.match(value):
            out.append(("mso-line-height-rule", "exactly", False))
            has_line_height_rule = True
    if is_image:
        out.extend((name, value, False) for name, value in IMAGE_DECLARATIONS)
    return out

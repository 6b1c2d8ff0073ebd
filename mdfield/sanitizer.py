"""Allowlist filtering of rendered markup.

``sanitize`` accepts a markup string or a node tree. Markup is parsed with
BeautifulSoup and rebuilt from allowlisted tags and attributes only; the
denylist (active content tags, ``on*`` handlers, script URLs) always wins
over the allowlist. Diagram containers get fixed sizing styles so engine
output cannot overflow the preview.
"""

from __future__ import annotations

import dataclasses
import html
import logging
import re

from bs4 import BeautifulSoup
from bs4.element import PreformattedString, Tag

from .errors import SanitizationViolation
from .nodes import DiagramBlock, Image, Link, MathNode, Node, RawHtml

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset(
    {
        "a", "abbr", "b", "blockquote", "br", "caption", "code", "dd", "del", "details", "div",
        "dl", "dt", "em", "figcaption", "figure", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i",
        "img", "ins", "kbd", "li", "mark", "ol", "p", "pre", "q", "s", "samp", "small", "span",
        "strike", "strong", "sub", "summary", "sup", "table", "tbody", "td", "tfoot", "th",
        "thead", "tr", "u", "ul",
        # SVG subset emitted by diagram engines. html.parser lowercases names.
        "svg", "g", "defs", "marker", "pattern", "path", "rect", "circle", "ellipse", "line",
        "polyline", "polygon", "text", "textpath", "tspan", "foreignobject", "clippath",
        "lineargradient", "radialgradient", "stop", "title", "desc",
    }
)

DENIED_TAGS = frozenset(
    {
        "script", "style", "iframe", "frame", "frameset", "object", "embed", "applet", "link",
        "meta", "base", "noscript", "template",
    }
)

ALLOWED_ATTRIBUTES = frozenset(
    {
        "class", "style", "id", "title", "alt", "src", "href", "target", "rel", "width", "height",
        "align", "colspan", "rowspan", "start", "lang", "dir", "role", "open",
        # SVG geometry and text.
        "xmlns", "version", "viewbox", "d", "fill", "stroke", "stroke-width", "stroke-dasharray",
        "stroke-opacity", "stroke-linecap", "stroke-linejoin", "fill-opacity", "opacity",
        "marker-end", "marker-start", "markerwidth", "markerheight", "markerunits", "orient",
        "refx", "refy", "transform", "x", "y", "x1", "y1", "x2", "y2", "cx", "cy", "r", "rx", "ry",
        "dx", "dy", "points", "preserveaspectratio", "pathlength", "font-family", "font-size",
        "font-weight", "text-anchor", "dominant-baseline", "clip-path", "patternunits",
        "gradientunits", "offset", "stop-color",
    }
)
ALLOWED_ATTRIBUTE_PREFIXES = ("data-", "aria-")
URL_ATTRIBUTES = frozenset({"href", "src", "xlink:href", "action", "formaction"})
UNSAFE_URL_SCHEMES = ("javascript:", "vbscript:", "data:")
UNSAFE_STYLE_MARKERS = ("expression(", "javascript:", "behavior:", "-moz-binding")

DIAGRAM_CONTAINER_CLASSES = frozenset({"mermaid", "mdfield-diagram"})
DIAGRAM_CONTAINER_STYLE = {"overflow": "visible !important", "max-width": "100%"}
DIAGRAM_SVG_STYLE = {"max-width": "100%", "height": "auto !important", "overflow": "visible !important"}
VOID_TAGS = frozenset({"area", "br", "col", "hr", "img", "input", "wbr"})

_OPEN_TAG_RE = re.compile(r"^<([A-Za-z][A-Za-z0-9-]*)(?:\s[^<>]*)?(?<!/)>$")
_CLOSE_TAG_RE = re.compile(r"^</\s*([A-Za-z][A-Za-z0-9-]*)\s*>$")


def _report(message: str) -> None:
    logger.debug("%s", SanitizationViolation(message))


def is_safe_url(value: str, *, allow_data_image: bool = False) -> bool:
    """Reject script-capable URL schemes, ignoring embedded whitespace."""
    compact = "".join(ch for ch in value if ch.isprintable() and not ch.isspace()).lower()
    if allow_data_image and compact.startswith("data:image/"):
        return True
    return not compact.startswith(UNSAFE_URL_SCHEMES)


def _merge_style(existing: str, forced: dict[str, str]) -> str:
    kept: list[str] = []
    for declaration in existing.split(";"):
        name, _, value = declaration.partition(":")
        name = name.strip().lower()
        if name and value.strip() and name not in forced:
            kept.append(f"{name}: {value.strip()}")
    kept.extend(f"{name}: {value}" for name, value in forced.items())
    return "; ".join(kept) + ";"


def _clean_attributes(element: Tag) -> None:
    for name in list(element.attrs):
        lowered = name.lower()
        value = element.attrs[name]
        text = " ".join(value) if isinstance(value, list) else str(value)
        if lowered.startswith("on"):
            _report(f"removed event handler {lowered!r} on <{element.name}>")
            del element.attrs[name]
        elif lowered not in ALLOWED_ATTRIBUTES and not lowered.startswith(ALLOWED_ATTRIBUTE_PREFIXES):
            _report(f"removed attribute {lowered!r} on <{element.name}>")
            del element.attrs[name]
        elif lowered in URL_ATTRIBUTES and not is_safe_url(text, allow_data_image=element.name == "img"):
            _report(f"removed unsafe URL in {lowered!r} on <{element.name}>")
            del element.attrs[name]
        elif lowered == "style" and any(marker in text.lower() for marker in UNSAFE_STYLE_MARKERS):
            _report(f"removed unsafe style on <{element.name}>")
            del element.attrs[name]


def _force_diagram_styles(soup: BeautifulSoup) -> None:
    for container in soup.find_all(True):
        if not DIAGRAM_CONTAINER_CLASSES.intersection(container.get("class") or ()):
            continue
        container["style"] = _merge_style(str(container.get("style", "")), DIAGRAM_CONTAINER_STYLE)
        for svg in container.find_all("svg"):
            svg["style"] = _merge_style(str(svg.get("style", "")), DIAGRAM_SVG_STYLE)


def sanitize_markup(markup: str) -> str:
    """Filter an HTML fragment down to the allowlist. Idempotent, never raises."""
    if not markup:
        return ""
    try:
        return _filter(markup)
    except Exception as exc:
        logger.warning("markup escaped instead of filtered: %s", exc)
        return html.escape(markup)


def sanitize_inline_fragment(fragment: str) -> str:
    """Filter one inline HTML token without closing or dropping a lone tag.

    markdown-it splits ``<kbd>x</kbd>`` into an opening token, text and a
    closing token. Each half is filtered on its own terms here; the container
    holding them is filtered again as a whole when it is serialized.
    """
    fragment = (fragment or "").strip()
    closing = _CLOSE_TAG_RE.match(fragment)
    if closing:
        name = closing.group(1).lower()
        if name in ALLOWED_TAGS and name not in VOID_TAGS:
            return f"</{name}>"
        _report(f"removed closing </{name}>")
        return ""
    opening = _OPEN_TAG_RE.match(fragment)
    if not opening or opening.group(1).lower() in VOID_TAGS:
        return sanitize_markup(fragment)
    suffix = f"</{opening.group(1).lower()}>"
    cleaned = sanitize_markup(fragment + suffix)
    return cleaned[: -len(suffix)] if cleaned.endswith(suffix) else ""


def _filter(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")

    for special in soup.find_all(string=lambda node: isinstance(node, PreformattedString)):
        # Comments, doctypes, CDATA and processing instructions.
        special.extract()

    for element in soup.find_all(True):
        if element.decomposed:
            continue
        name = element.name.lower()
        if name in DENIED_TAGS:
            _report(f"removed <{name}>")
            element.decompose()
        elif name not in ALLOWED_TAGS:
            _report(f"unwrapped <{name}>")
            element.unwrap()
        else:
            _clean_attributes(element)

    _force_diagram_styles(soup)
    return str(soup)


def _sanitize_node(node: Node) -> Node:
    changes: dict[str, object] = {}
    match node:
        case RawHtml(html=raw, block=False):
            changes["html"] = sanitize_inline_fragment(raw)
        case RawHtml(html=raw):
            changes["html"] = sanitize_markup(raw)
        case MathNode(markup=markup) | DiagramBlock(markup=markup):
            changes["markup"] = sanitize_markup(markup)
        case Link(href=href) if not is_safe_url(href):
            _report(f"removed unsafe link {href[:40]!r}")
            changes["href"] = ""
        case Image(src=src) if not is_safe_url(src, allow_data_image=True):
            _report(f"removed unsafe image {src[:40]!r}")
            changes["src"] = ""
    if node.children:
        changes["children"] = tuple(_sanitize_node(child) for child in node.children)
    return dataclasses.replace(node, **changes) if changes else node


def sanitize(target):
    """Sanitize markup (``str``) or every markup-bearing node of a tree."""
    if isinstance(target, Node):
        return _sanitize_node(target)
    if isinstance(target, str):
        return sanitize_markup(target)
    return ""

"""Typed document tree produced by the renderer.

Every node is a frozen dataclass carrying a ``children`` tuple plus its own
semantic attributes. Consumers dispatch on the class (``match node: case
Heading(level=level): ...``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass(frozen=True)
class Node:
    children: tuple[Node, ...] = ()


@dataclass(frozen=True)
class Document(Node):
    pass


@dataclass(frozen=True)
class Heading(Node):
    level: int = 1


@dataclass(frozen=True)
class Paragraph(Node):
    pass


@dataclass(frozen=True)
class List(Node):
    ordered: bool = False
    start: int | None = None
    tight: bool = True


@dataclass(frozen=True)
class ListItem(Node):
    pass


@dataclass(frozen=True)
class BlockQuote(Node):
    pass


@dataclass(frozen=True)
class ThematicBreak(Node):
    pass


@dataclass(frozen=True)
class CodeBlock(Node):
    language: str = ""
    code: str = ""
    highlight_lines: tuple[int, ...] = ()


@dataclass(frozen=True)
class MathNode(Node):
    display: bool = False
    tex: str = ""
    markup: str = ""


@dataclass(frozen=True)
class DiagramBlock(Node):
    language: str = ""
    source: str = ""
    markup: str = ""


@dataclass(frozen=True)
class AlertBlock(Node):
    """GitHub-style callout. ``children`` is the body."""

    alert_type: str = "note"
    title: str = ""


@dataclass(frozen=True)
class Table(Node):
    alignments: tuple[str | None, ...] = ()


@dataclass(frozen=True)
class TableRow(Node):
    pass


@dataclass(frozen=True)
class TableCell(Node):
    align: str | None = None
    header: bool = False


@dataclass(frozen=True)
class Link(Node):
    href: str = ""
    title: str | None = None


@dataclass(frozen=True)
class Image(Node):
    src: str = ""
    alt: str = ""
    title: str | None = None


@dataclass(frozen=True)
class Emphasis(Node):
    pass


@dataclass(frozen=True)
class Strong(Node):
    pass


@dataclass(frozen=True)
class Strikethrough(Node):
    pass


@dataclass(frozen=True)
class CodeSpan(Node):
    code: str = ""


@dataclass(frozen=True)
class Text(Node):
    text: str = ""


@dataclass(frozen=True)
class SoftBreak(Node):
    pass


@dataclass(frozen=True)
class HardBreak(Node):
    pass


@dataclass(frozen=True)
class RawHtml(Node):
    html: str = ""
    block: bool = False


@dataclass(frozen=True)
class ErrorNode(Node):
    """Stand-in for a construct that could not be built.

    ``kind`` is one of ``"math"``, ``"diagram"`` or ``"render"``.
    """

    kind: str = "render"
    message: str = ""
    source: str = ""
    display: bool = True


@dataclass(frozen=True)
class ExtensionMatch:
    """A construct recognized by an extension, before it becomes a node."""

    kind: str
    raw: str
    payload: dict[str, Any] = field(default_factory=dict)
    is_block: bool = True


def walk(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all of its descendants, depth first."""
    yield node
    for child in node.children:
        yield from walk(child)


def text_content(node: Node) -> str:
    match node:
        case Text(text=text):
            return text
        case CodeSpan(code=code):
            return code
        case SoftBreak() | HardBreak():
            return "\n"
        case MathNode(tex=tex):
            return tex
        case _:
            return "".join(text_content(child) for child in node.children)

"""Pluggable syntax extensions and the registry that orders them.

An extension plugs its recognizer into the markdown-it parser
(``install``), claims syntax-tree nodes it understands (``match``) and turns
each claim into a document node (``build``). The registry asks extensions in
registration order, so the first one to match a node wins.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Iterator, Protocol, Sequence

from markdown_it import MarkdownIt
from markdown_it.rules_block import StateBlock
from markdown_it.rules_inline import StateInline
from markdown_it.tree import SyntaxTreeNode
from mdit_py_plugins.dollarmath import dollarmath_plugin

from .engines import (
    DiagramEngine,
    DiagramEngineRouter,
    FormulaEngine,
    MathJaxFormulaEngine,
    MermaidClientEngine,
    PlantUmlEngine,
)
from .errors import DiagramError, FormulaError
from .nodes import (
    AlertBlock,
    DiagramBlock,
    ErrorNode,
    ExtensionMatch,
    HardBreak,
    MathNode,
    Node,
    Paragraph,
    SoftBreak,
    Text,
)
from .normalizer import ALERT_TYPES

logger = logging.getLogger(__name__)

DIAGRAM_LANGUAGES = ("mermaid", "plantuml", "puml", "uml")

_ALERT_LINE_RE = re.compile(r"^[ \t]*\[!(" + "|".join(ALERT_TYPES) + r")\][ \t]*", re.IGNORECASE)
_TEX_LEFT_RE = re.compile(r"\\left(?![A-Za-z])")
_TEX_RIGHT_RE = re.compile(r"\\right(?![A-Za-z])")
_TEX_ESCAPED_BRACE_RE = re.compile(r"\\[{}]")
_TEX_BARE_SCRIPT_RE = re.compile(r"(?<!\\)([_^])([A-Za-z0-9])(?![A-Za-z0-9])")
_TEX_FRAC_SPACE_RE = re.compile(r"\\frac\s+\{")


class TreeBuilder(Protocol):
    def build_blocks(self, nodes: Sequence[SyntaxTreeNode]) -> tuple[Node, ...]: ...

    def build_inlines(self, inline: SyntaxTreeNode | None) -> tuple[Node, ...]: ...


class Extension:
    """Base class for syntax extensions."""

    name = ""
    node_types: tuple[str, ...] = ()

    def install(self, md: MarkdownIt) -> None:
        pass

    def match(self, node: SyntaxTreeNode) -> ExtensionMatch | None:
        return None

    def build(self, match: ExtensionMatch, builder: TreeBuilder) -> Node:
        raise NotImplementedError


def fence_language(info: str) -> str:
    words = (info or "").strip().split(maxsplit=1)
    if not words:
        return ""
    return words[0].split("{", 1)[0].lower()


def repair_tex(tex: str) -> str:
    """Fix the usual hand-typed TeX mistakes.

    Balances ``\\left``/``\\right`` with null delimiters, balances braces and
    braces bare single-character sub/superscripts.
    """
    fixed = tex
    lefts = len(_TEX_LEFT_RE.findall(fixed))
    rights = len(_TEX_RIGHT_RE.findall(fixed))
    if lefts > rights:
        fixed += " \\right." * (lefts - rights)
    elif rights > lefts:
        fixed = "\\left. " * (rights - lefts) + fixed

    unescaped = _TEX_ESCAPED_BRACE_RE.sub("", fixed)
    depth = 0
    missing_open = 0
    for char in unescaped:
        if char == "{":
            depth += 1
        elif char == "}":
            if depth:
                depth -= 1
            else:
                missing_open += 1
    fixed = "{" * missing_open + fixed + "}" * depth

    fixed = _TEX_BARE_SCRIPT_RE.sub(r"\1{\2}", fixed)
    return _TEX_FRAC_SPACE_RE.sub(r"\\frac{", fixed)


def _bracket_math_inline(state: StateInline, silent: bool) -> bool:
    """``\\(...\\)`` inline and ``\\[...\\]`` display math inside paragraphs."""
    src = state.src
    start = state.pos
    if not (src.startswith("\\(", start) or src.startswith("\\[", start)):
        return False
    closer = "\\)" if src[start + 1] == "(" else "\\]"
    end = src.find(closer, start + 2)
    if end == -1 or not src[start + 2 : end].strip():
        return False
    if not silent:
        token = state.push("math_inline" if closer == "\\)" else "math_inline_double", "math", 0)
        token.content = src[start + 2 : end]
        token.markup = src[start : start + 2]
    state.pos = end + 2
    return True


def _bracket_math_block(state: StateBlock, start_line: int, end_line: int, silent: bool) -> bool:
    """``\\[`` at the start of a line opens display math up to ``\\]``."""
    if state.sCount[start_line] - state.blkIndent >= 4:
        return False
    begin = state.bMarks[start_line] + state.tShift[start_line]
    first = state.src[begin : state.eMarks[start_line]]
    if not first.startswith("\\["):
        return False

    parts = [first[2:]]
    line = start_line
    while True:
        if parts[-1].rstrip().endswith("\\]"):
            parts[-1] = parts[-1].rstrip()[:-2]
            break
        line += 1
        if line >= end_line:
            return False
        parts.append(state.src[state.bMarks[line] + state.tShift[line] : state.eMarks[line]])
    if silent:
        return True

    token = state.push("math_block", "math", 0)
    token.block = True
    token.content = "\n".join(parts)
    token.markup = "\\["
    token.map = [start_line, line + 1]
    state.line = line + 1
    return True


class MathExtension(Extension):
    """``$...$``, ``$$...$$``, ``\\(...\\)`` and ``\\[...\\]`` math."""

    name = "math"
    node_types = ("math_inline", "math_inline_double", "math_block", "math_block_label")

    def __init__(self, engine: FormulaEngine | None = None):
        self.engine = engine if engine is not None else MathJaxFormulaEngine()

    def install(self, md: MarkdownIt) -> None:
        md.use(dollarmath_plugin, double_inline=True)
        md.inline.ruler.before("escape", "math_bracket_inline", _bracket_math_inline)
        md.block.ruler.before(
            "fence",
            "math_bracket_block",
            _bracket_math_block,
            {"alt": ["paragraph", "reference", "blockquote", "list"]},
        )

    def match(self, node: SyntaxTreeNode) -> ExtensionMatch | None:
        tex = node.content or ""
        # A single-dollar span that crosses a line break is display math.
        display = node.type != "math_inline" or "\n" in tex.strip()
        return ExtensionMatch(
            kind="math",
            raw=tex,
            payload={"tex": tex.strip(), "display": display},
            is_block=node.type.startswith("math_block"),
        )

    def build(self, match: ExtensionMatch, builder: TreeBuilder) -> Node:
        tex = match.payload["tex"]
        display = match.payload["display"]
        try:
            return MathNode(display=display, tex=tex, markup=self.engine.render_formula(tex, display))
        except FormulaError as exc:
            error = exc
        repaired = repair_tex(tex)
        if repaired != tex:
            try:
                return MathNode(display=display, tex=repaired, markup=self.engine.render_formula(repaired, display))
            except FormulaError as exc:
                error = exc
        logger.info("formula left unrendered: %s", error)
        return ErrorNode(kind="math", message=str(error), source=tex, display=display)


class DiagramExtension(Extension):
    """Fenced code blocks whose info string names a diagram language."""

    name = "diagram"
    node_types = ("fence",)

    def __init__(self, engine: DiagramEngine | None = None, languages: Iterable[str] | None = None):
        if engine is None:
            engine = DiagramEngineRouter([MermaidClientEngine(), PlantUmlEngine()])
        self.engine = engine
        if languages is None:
            languages = getattr(engine, "languages", DIAGRAM_LANGUAGES)
        self.languages = frozenset(language.lower() for language in languages)

    def match(self, node: SyntaxTreeNode) -> ExtensionMatch | None:
        language = fence_language(node.info)
        if language not in self.languages:
            return None
        return ExtensionMatch(
            kind="diagram",
            raw=node.content,
            payload={"language": language, "source": node.content},
        )

    def build(self, match: ExtensionMatch, builder: TreeBuilder) -> Node:
        language = match.payload["language"]
        source = match.payload["source"]
        try:
            markup = self.engine.render_diagram(source, language)
        except DiagramError as exc:
            logger.info("%s diagram left unrendered: %s", language, exc)
            return ErrorNode(kind="diagram", message=str(exc), source=source, display=True)
        return DiagramBlock(language=language, source=source, markup=markup)


def _strip_leading_text(inlines: Sequence[Node], count: int) -> tuple[Node, ...]:
    """Drop ``count`` characters of leading text, then any leading breaks."""
    remaining = list(inlines)
    while count > 0 and remaining and isinstance(remaining[0], Text):
        text = remaining[0].text
        if len(text) <= count:
            count -= len(text)
            remaining.pop(0)
        else:
            remaining[0] = Text(text=text[count:])
            count = 0
    while remaining:
        first = remaining[0]
        if isinstance(first, (SoftBreak, HardBreak)) or (isinstance(first, Text) and not first.text.strip()):
            remaining.pop(0)
        elif isinstance(first, Text) and first.text != first.text.lstrip():
            remaining[0] = Text(text=first.text.lstrip())
        else:
            break
    return tuple(remaining)


class AlertExtension(Extension):
    """GitHub-style ``[!TYPE]`` callouts in paragraphs and block quotes.

    In a paragraph everything after the marker is the body. In a block quote
    the rest of the marker line is the title when more content follows it.
    """

    name = "alert"
    node_types = ("paragraph", "blockquote")

    def match(self, node: SyntaxTreeNode) -> ExtensionMatch | None:
        paragraph = node if node.type == "paragraph" else None
        if node.type == "blockquote" and node.children and node.children[0].type == "paragraph":
            paragraph = node.children[0]
        if paragraph is None or not paragraph.children:
            return None
        content = paragraph.children[0].content or ""
        marker = _ALERT_LINE_RE.match(content)
        if marker is None:
            return None
        first_line, _, rest = content.partition("\n")
        return ExtensionMatch(
            kind="alert",
            raw=content,
            payload={
                "alert_type": marker.group(1).lower(),
                "marker_length": marker.end(),
                "first_line": first_line,
                "has_more_lines": bool(rest.strip()),
                "node": node,
            },
        )

    def build(self, match: ExtensionMatch, builder: TreeBuilder) -> Node:
        node: SyntaxTreeNode = match.payload["node"]
        marker_length = match.payload["marker_length"]
        first_line = match.payload["first_line"]

        if node.type == "paragraph":
            inlines = _strip_leading_text(builder.build_inlines(node.children[0]), marker_length)
            body = (Paragraph(children=inlines),) if inlines else ()
            return AlertBlock(alert_type=match.payload["alert_type"], title="", children=body)

        first_paragraph, *others = node.children
        title = ""
        strip = marker_length
        if match.payload["has_more_lines"] or others:
            title = first_line[marker_length:].strip()
            strip = len(first_line)
        inlines = _strip_leading_text(builder.build_inlines(first_paragraph.children[0]), strip)
        body: tuple[Node, ...] = (Paragraph(children=inlines),) if inlines else ()
        return AlertBlock(
            alert_type=match.payload["alert_type"],
            title=title,
            children=body + builder.build_blocks(others),
        )


class ExtensionRegistry:
    """Ordered set of extensions plus the parser they configure."""

    def __init__(self, extensions: Iterable[Extension] = ()):
        self._extensions: list[Extension] = []
        self._parser: MarkdownIt | None = None
        for extension in extensions:
            self.register(extension)

    def __iter__(self) -> Iterator[Extension]:
        return iter(self._extensions)

    def __len__(self) -> int:
        return len(self._extensions)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(extension.name for extension in self._extensions)

    def get(self, name: str) -> Extension | None:
        for extension in self._extensions:
            if extension.name == name:
                return extension
        return None

    def register(self, extension: Extension, *, before: str | None = None) -> None:
        if self.get(extension.name) is not None:
            raise ValueError(f"extension {extension.name!r} is already registered")
        index = len(self._extensions)
        if before is not None:
            index = self.names.index(before)
        self._extensions.insert(index, extension)
        self._parser = None

    def parser(self) -> MarkdownIt:
        """The markdown-it instance with every extension installed."""
        if self._parser is None:
            md = MarkdownIt("commonmark", {"html": True}).enable("table").enable("strikethrough")
            for extension in self._extensions:
                extension.install(md)
            self._parser = md
        return self._parser

    def match(self, node: SyntaxTreeNode) -> tuple[Extension, ExtensionMatch] | None:
        for extension in self._extensions:
            if node.type not in extension.node_types:
                continue
            found = extension.match(node)
            if found is not None:
                return extension, found
        return None


def default_registry(
    formula_engine: FormulaEngine | None = None,
    diagram_engine: DiagramEngine | None = None,
) -> ExtensionRegistry:
    """Math, diagrams and alerts, in that order of precedence."""
    return ExtensionRegistry(
        [
            MathExtension(formula_engine),
            DiagramExtension(diagram_engine),
            AlertExtension(),
        ]
    )

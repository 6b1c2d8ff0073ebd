"""Markdown text to a typed node tree, and node trees to HTML."""

from __future__ import annotations

import html
import json
import logging
import re
from typing import Sequence
from urllib.parse import urlsplit

from markdown_it.tree import SyntaxTreeNode

from .config import AppConfig
from .engines import DiagramEngineRouter, MathJaxFormulaEngine, MermaidClientEngine, PlantUmlEngine
from .errors import RenderFailure
from .extensions import ExtensionRegistry, default_registry
from .nodes import (
    AlertBlock,
    BlockQuote,
    CodeBlock,
    CodeSpan,
    DiagramBlock,
    Document,
    Emphasis,
    ErrorNode,
    HardBreak,
    Heading,
    Image,
    Link,
    List,
    ListItem,
    MathNode,
    Node,
    Paragraph,
    RawHtml,
    SoftBreak,
    Strikethrough,
    Strong,
    Table,
    TableCell,
    TableRow,
    Text,
    ThematicBreak,
)
from .normalizer import normalize
from .sanitizer import sanitize, sanitize_markup

logger = logging.getLogger(__name__)

ALERT_TITLES = {
    "note": "Note",
    "tip": "Tip",
    "important": "Important",
    "warning": "Warning",
    "caution": "Caution",
}
ALERT_ICONS = {
    "note": "i",
    "tip": "+",
    "important": "!",
    "warning": "!",
    "caution": "!",
}

_CODE_INFO_RE = re.compile(r"^\s*([^\s{]*)\s*(?:\{([^}]*)\})?")
_ALIGN_STYLE_RE = re.compile(r"text-align\s*:\s*(left|right|center)", re.IGNORECASE)


def parse_code_info(info: str) -> tuple[str, tuple[int, ...]]:
    """Split ``js{1,3-5}`` into ``("js", (1, 3, 4, 5))``."""
    match = _CODE_INFO_RE.match(info or "")
    language = match.group(1).lower() if match else ""
    lines: set[int] = set()
    if match and match.group(2):
        for part in match.group(2).split(","):
            bounds = [piece.strip() for piece in part.split("-", 1)]
            if not all(piece.isdigit() for piece in bounds):
                continue
            first, last = int(bounds[0]), int(bounds[-1])
            lines.update(range(min(first, last), max(first, last) + 1))
    return language, tuple(sorted(lines))


def clean_image_url(url: str) -> str:
    """Strip stray quotes and entities; drop absolute URLs that do not parse."""
    cleaned = html.unescape((url or "").strip().strip("'\""))
    if not cleaned:
        return ""
    if cleaned.lower().startswith(("http:", "https:")):
        try:
            parts = urlsplit(cleaned)
        except ValueError:
            return ""
        if not parts.netloc:
            return ""
    return cleaned


def _cell_alignment(cell: SyntaxTreeNode) -> str | None:
    match = _ALIGN_STYLE_RE.search(str(cell.attrs.get("style", "")))
    return match.group(1).lower() if match else None


class NodeTreeBuilder:
    """Converts a markdown-it syntax tree into mdfield nodes."""

    def __init__(self, registry: ExtensionRegistry, source: str):
        self.registry = registry
        self._lines = source.split("\n")

    def build_document(self, root: SyntaxTreeNode) -> Document:
        return Document(children=self.build_blocks(root.children))

    def _source_of(self, node: SyntaxTreeNode) -> str:
        try:
            span = node.map
        except Exception:
            span = None
        if not span:
            return ""
        return "\n".join(self._lines[span[0] : span[1]])

    def build_blocks(self, nodes: Sequence[SyntaxTreeNode]) -> tuple[Node, ...]:
        built: list[Node] = []
        for node in nodes:
            try:
                built.append(self.build_block(node))
            except Exception as exc:
                failure = exc if isinstance(exc, RenderFailure) else RenderFailure(f"{node.type}: {exc}")
                logger.warning("block replaced with an error node: %s", failure)
                built.append(ErrorNode(kind="render", message=str(failure), source=self._source_of(node)))
        return tuple(built)

    def build_block(self, node: SyntaxTreeNode) -> Node:
        claimed = self.registry.match(node)
        if claimed is not None:
            extension, found = claimed
            return extension.build(found, self)

        kind = node.type
        if kind == "paragraph":
            return Paragraph(children=self.build_inlines(node.children[0] if node.children else None))
        if kind == "heading":
            return Heading(level=int(node.tag[1:]), children=self.build_inlines(node.children[0] if node.children else None))
        if kind in ("bullet_list", "ordered_list"):
            return self._build_list(node)
        if kind == "list_item":
            return ListItem(children=self.build_blocks(node.children))
        if kind == "blockquote":
            return BlockQuote(children=self.build_blocks(node.children))
        if kind == "hr":
            return ThematicBreak()
        if kind == "code_block":
            return CodeBlock(code=node.content)
        if kind == "fence":
            language, highlight_lines = parse_code_info(node.info)
            return CodeBlock(language=language, code=node.content, highlight_lines=highlight_lines)
        if kind == "html_block":
            return RawHtml(html=node.content, block=True)
        if kind == "table":
            return self._build_table(node)
        raise RenderFailure(f"unsupported block {kind!r}")

    def _build_list(self, node: SyntaxTreeNode) -> List:
        ordered = node.type == "ordered_list"
        start = None
        if ordered and node.attrs.get("start") is not None:
            start = int(node.attrs["start"])
            if start == 1:
                start = None
        # markdown-it hides the paragraphs of tight lists.
        tight = all(
            child.hidden
            for item in node.children
            for child in item.children
            if child.type == "paragraph"
        )
        items = self.build_blocks(node.children)
        return List(ordered=ordered, start=start, tight=tight, children=items)

    def _build_table(self, node: SyntaxTreeNode) -> Table:
        header_rows: list[SyntaxTreeNode] = []
        body_rows: list[SyntaxTreeNode] = []
        for section in node.children:
            rows = [row for row in section.children if row.type == "tr"]
            (header_rows if section.type == "thead" else body_rows).extend(rows)
        if not header_rows:
            raise RenderFailure("table has no header row")

        alignments = tuple(_cell_alignment(cell) for cell in header_rows[0].children)
        rows = [self._build_row(header_rows[0], alignments, header=True)]
        rows.extend(self._build_row(row, alignments, header=False) for row in body_rows)
        return Table(alignments=alignments, children=tuple(rows))

    def _build_row(self, row: SyntaxTreeNode, alignments: tuple[str | None, ...], header: bool) -> TableRow:
        cells = [
            TableCell(
                align=alignments[index],
                header=header,
                children=self.build_inlines(cell.children[0] if cell.children else None),
            )
            for index, cell in enumerate(row.children[: len(alignments)])
        ]
        cells.extend(TableCell(align=alignments[index], header=header) for index in range(len(cells), len(alignments)))
        return TableRow(children=tuple(cells))

    def build_inlines(self, inline: SyntaxTreeNode | None) -> tuple[Node, ...]:
        if inline is None:
            return ()
        return tuple(self._build_inline(child) for child in inline.children)

    def _build_inline_children(self, node: SyntaxTreeNode) -> tuple[Node, ...]:
        return tuple(self._build_inline(child) for child in node.children)

    def _build_inline(self, node: SyntaxTreeNode) -> Node:
        claimed = self.registry.match(node)
        if claimed is not None:
            extension, found = claimed
            try:
                return extension.build(found, self)
            except Exception as exc:
                failure = exc if isinstance(exc, RenderFailure) else RenderFailure(f"{extension.name}: {exc}")
                logger.warning("inline node replaced with an error node: %s", failure)
                return ErrorNode(kind="render", message=str(failure), source=found.raw, display=False)

        kind = node.type
        if kind in ("text", "text_special"):
            return Text(text=node.content)
        if kind == "softbreak":
            return SoftBreak()
        if kind == "hardbreak":
            return HardBreak()
        if kind == "code_inline":
            return CodeSpan(code=node.content)
        if kind == "em":
            return Emphasis(children=self._build_inline_children(node))
        if kind == "strong":
            return Strong(children=self._build_inline_children(node))
        if kind == "s":
            return Strikethrough(children=self._build_inline_children(node))
        if kind == "link":
            title = node.attrs.get("title")
            return Link(
                href=str(node.attrs.get("href", "")),
                title=str(title) if title is not None else None,
                children=self._build_inline_children(node),
            )
        if kind == "image":
            title = node.attrs.get("title")
            return Image(
                src=clean_image_url(str(node.attrs.get("src", ""))),
                alt=node.content,
                title=str(title) if title is not None else None,
            )
        if kind == "html_inline":
            return RawHtml(html=node.content, block=False)
        return Text(text=node.content or "")


def render(text: str, registry: ExtensionRegistry | None = None) -> Document:
    """Parse (already normalized) text into a document tree. Never raises."""
    if registry is None:
        registry = default_registry()
    if not isinstance(text, str):
        text = ""
    try:
        tokens = registry.parser().parse(text)
        root = SyntaxTreeNode(tokens)
    except Exception as exc:
        failure = RenderFailure(f"document could not be parsed: {exc}")
        logger.warning("%s", failure)
        return Document(children=(ErrorNode(kind="render", message=str(failure), source=text),))
    return NodeTreeBuilder(registry, text).build_document(root)


def _attr(name: str, value: object) -> str:
    return f' {name}="{html.escape(str(value), quote=True)}"'


def _alert_html(node: AlertBlock, body: str) -> str:
    style_type = node.alert_type if node.alert_type in ALERT_TITLES else "note"
    title = node.title or ALERT_TITLES[style_type]
    return (
        f'<div class="mdfield-callout mdfield-callout-{style_type}"{_attr("data-callout", node.alert_type)}>'
        '<div class="mdfield-callout-title">'
        f'<span class="mdfield-callout-icon" aria-hidden="true">{ALERT_ICONS[style_type]}</span>'
        f'<span class="mdfield-callout-title-text">{html.escape(title)}</span>'
        "</div>"
        f'<div class="mdfield-callout-content">{body}</div>'
        "</div>"
    )


def _error_html(node: ErrorNode) -> str:
    message = html.escape(node.message or f"{node.kind} failed")
    source = html.escape(node.source)
    if node.display:
        return (
            f'<div class="mdfield-error mdfield-error-{node.kind}">'
            f'<div class="mdfield-error-message">{message}</div>'
            f"<pre><code>{source}</code></pre>"
            "</div>"
        )
    return f'<span class="mdfield-error mdfield-error-{node.kind}" title="{message}"><code>{source}</code></span>'


def _cell_html(node: TableCell) -> str:
    tag = "th" if node.header else "td"
    style = _attr("style", f"text-align:{node.align}") if node.align else ""
    return f"<{tag}{style}>{_children_html(node)}</{tag}>"


def _children_html(node: Node, *, tight: bool = False, separator: str = "") -> str:
    if not any(isinstance(child, RawHtml) and not child.block for child in node.children):
        return separator.join(_to_html(child, tight=tight) for child in node.children)
    # Inline tags arrive as separate open/close tokens; filter them together.
    joined = separator.join(
        child.html if isinstance(child, RawHtml) and not child.block else _to_html(child, tight=tight)
        for child in node.children
    )
    return sanitize_markup(joined)


def _to_html(node: Node, *, tight: bool = False) -> str:
    match node:
        case Document():
            return _children_html(node, separator="\n")
        case Heading(level=level):
            return f"<h{level}>{_children_html(node)}</h{level}>"
        case Paragraph():
            if tight:
                return _children_html(node)
            return f"<p>{_children_html(node)}</p>"
        case List(ordered=ordered, start=start, tight=is_tight):
            tag = "ol" if ordered else "ul"
            start_attr = _attr("start", start) if ordered and start is not None else ""
            items = "\n".join(_to_html(item, tight=is_tight) for item in node.children)
            return f"<{tag}{start_attr}>\n{items}\n</{tag}>"
        case ListItem():
            content = _children_html(node, tight=tight, separator="\n")
            return f"<li>{content}</li>"
        case BlockQuote():
            content = _children_html(node, separator="\n")
            return f"<blockquote>\n{content}\n</blockquote>"
        case ThematicBreak():
            return "<hr/>"
        case CodeBlock(language=language, code=code, highlight_lines=highlight_lines):
            attrs = _attr("class", f"language-{language}") if language else ""
            if highlight_lines:
                attrs += _attr("data-highlight-lines", ",".join(str(line) for line in highlight_lines))
            return f"<pre><code{attrs}>{html.escape(code)}</code></pre>"
        case MathNode(markup=markup) | DiagramBlock(markup=markup):
            return sanitize_markup(markup)
        case AlertBlock():
            return _alert_html(node, _children_html(node, separator="\n"))
        case Table():
            head, *body = node.children
            rows = "".join(f"<tr>{_children_html(row)}</tr>" for row in body)
            return f"<table><thead><tr>{_children_html(head)}</tr></thead><tbody>{rows}</tbody></table>"
        case TableRow():
            return f"<tr>{_children_html(node)}</tr>"
        case TableCell():
            return _cell_html(node)
        case Link(href=href, title=title):
            title_attr = _attr("title", title) if title else ""
            return (
                f'<a{_attr("href", href)}{title_attr} target="_blank" rel="noopener noreferrer">'
                f"{_children_html(node)}</a>"
            )
        case Image(src=src, alt=alt, title=title):
            title_attr = _attr("title", title) if title else ""
            return f'<img{_attr("src", src)}{_attr("alt", alt)}{title_attr}/>'
        case Emphasis():
            return f"<em>{_children_html(node)}</em>"
        case Strong():
            return f"<strong>{_children_html(node)}</strong>"
        case Strikethrough():
            return f"<s>{_children_html(node)}</s>"
        case CodeSpan(code=code):
            return f"<code>{html.escape(code)}</code>"
        case Text(text=text):
            return html.escape(text, quote=False)
        case SoftBreak():
            return "\n"
        case HardBreak():
            return "<br/>\n"
        case RawHtml(html=raw):
            return sanitize_markup(raw)
        case ErrorNode():
            return _error_html(node)
        case _:
            return _children_html(node)


def to_html(node: Node) -> str:
    """Serialize a node tree. Text is escaped; markup goes through the sanitizer."""
    return _to_html(node)


class MarkdownRenderer:
    """Runs the whole pipeline and wraps the result in a preview page."""

    def __init__(self, config: AppConfig | None = None, registry: ExtensionRegistry | None = None):
        config = config if config is not None else AppConfig()
        self.formula_engine = MathJaxFormulaEngine(config.mathjax_js)
        self.mermaid_engine = MermaidClientEngine(config.mermaid_js)
        self.plantuml_engine = PlantUmlEngine(config.plantuml_jar)
        if registry is None:
            registry = default_registry(
                self.formula_engine,
                DiagramEngineRouter([self.mermaid_engine, self.plantuml_engine]),
            )
        self.registry = registry

    def render_tree(self, raw: str) -> Document:
        return sanitize(render(normalize(raw), self.registry))

    def render_html(self, raw: str) -> str:
        return to_html(self.render_tree(raw))

    def render_document(self, markdown_text: str, title: str) -> str:
        body = self.render_html(markdown_text)
        escaped_title = html.escape(title)
        mathjax_sources_json = json.dumps(self.formula_engine.script_sources())
        mermaid_sources_json = json.dumps(self.mermaid_engine.script_sources())
        return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>{escaped_title}</title>
  <style>
    :root {{
      color-scheme: light dark;
      --fg: #1f2937;
      --bg: #f9fafb;
      --code-bg: #e5e7eb;
      --border: #d1d5db;
      --link: #0b57d0;
      --error: #b91c1c;
      --callout-note: #2563eb;
      --callout-tip: #16a34a;
      --callout-important: #7c3aed;
      --callout-warning: #d97706;
      --callout-caution: #dc2626;
    }}
    @media (prefers-color-scheme: dark) {{
      :root {{
        --fg: #e5e7eb;
        --bg: #111827;
        --code-bg: #1f2937;
        --border: #374151;
        --link: #8ab4f8;
        --error: #f87171;
      }}
    }}
    html, body {{
      margin: 0;
      padding: 0;
      background: var(--bg);
      color: var(--fg);
      font-family: "Noto Sans", "DejaVu Sans", sans-serif;
      line-height: 1.55;
      font-size: 16px;
    }}
    main {{
      max-width: 980px;
      margin: 0 auto;
      padding: 1.1rem 1.4rem 4rem 1.4rem;
    }}
    a {{
      color: var(--link);
    }}
    pre, code {{
      font-family: "Noto Sans Mono", "DejaVu Sans Mono", monospace;
    }}
    code {{
      background: var(--code-bg);
      border-radius: 4px;
      padding: 0.1rem 0.35rem;
    }}
    pre {{
      background: var(--code-bg);
      border: 1px solid var(--border);
      border-radius: 6px;
      padding: 0.8rem;
      overflow: auto;
    }}
    pre > code {{
      background: transparent;
      padding: 0;
    }}
    table {{
      border-collapse: collapse;
    }}
    th, td {{
      border: 1px solid var(--border);
      padding: 0.4rem 0.6rem;
    }}
    .mdfield-diagram {{
      margin: 0.65rem 0 0.95rem 0;
    }}
    .mdfield-error {{
      color: var(--error);
    }}
    .mdfield-error-message {{
      font-weight: 600;
      margin-bottom: 0.3rem;
    }}
    .mdfield-callout {{
      margin: 0.9rem 0;
      padding: 0.72rem 0.9rem 0.78rem 0.95rem;
      border-left: 0.32rem solid var(--callout-note);
      background: color-mix(in srgb, var(--callout-note) 12%, transparent);
      border-radius: 0.45rem;
      break-inside: avoid;
    }}
    .mdfield-callout-title {{
      display: flex;
      align-items: center;
      gap: 0.5rem;
      margin: 0 0 0.38rem 0;
      font-weight: 700;
    }}
    .mdfield-callout-icon {{
      display: inline-flex;
      align-items: center;
      justify-content: center;
      width: 1.05rem;
      height: 1.05rem;
      border-radius: 999px;
      border: 1px solid currentColor;
      font-size: 0.73rem;
    }}
    .mdfield-callout-content > :first-child {{
      margin-top: 0;
    }}
    .mdfield-callout-content > :last-child {{
      margin-bottom: 0;
    }}
    .mdfield-callout-tip {{
      border-left-color: var(--callout-tip);
      background: color-mix(in srgb, var(--callout-tip) 12%, transparent);
    }}
    .mdfield-callout-important {{
      border-left-color: var(--callout-important);
      background: color-mix(in srgb, var(--callout-important) 12%, transparent);
    }}
    .mdfield-callout-warning {{
      border-left-color: var(--callout-warning);
      background: color-mix(in srgb, var(--callout-warning) 14%, transparent);
    }}
    .mdfield-callout-caution {{
      border-left-color: var(--callout-caution);
      background: color-mix(in srgb, var(--callout-caution) 12%, transparent);
    }}
    mjx-container[jax="SVG"] > svg {{
      max-width: 100%;
      height: auto;
      overflow: visible;
    }}
  </style>
  <script>
    window.MathJax = {{
      startup: {{
        typeset: false
      }},
      tex: {{
        inlineMath: [['\\\\(', '\\\\)']],
        displayMath: [['$$', '$$'], ['\\\\[', '\\\\]']]
      }},
      options: {{
        skipHtmlTags: ['script', 'noscript', 'style', 'textarea', 'pre', 'code']
      }}
    }};
    window.__mdfieldMathJaxSources = {mathjax_sources_json};
    window.__mdfieldMermaidSources = {mermaid_sources_json};

    window.__mdfieldLoadFirstScript = async (sources, isReady) => {{
      for (const src of sources) {{
        try {{
          await new Promise((resolve, reject) => {{
            const script = document.createElement("script");
            script.src = src;
            script.defer = true;
            script.onload = () => resolve(true);
            script.onerror = () => reject(new Error(`Failed to load ${{src}}`));
            document.head.appendChild(script);
          }});
          if (isReady()) {{
            return true;
          }}
        }} catch (error) {{
          console.error("mdfield script load failed:", src, error);
        }}
      }}
      return false;
    }};

    window.__mdfieldRunClientRenderers = async () => {{
      // Keep Mermaid failures isolated so math rendering is never blocked.
      if (document.querySelector(".mermaid")) {{
        try {{
          if (await window.__mdfieldLoadFirstScript(window.__mdfieldMermaidSources, () => !!window.mermaid)) {{
            mermaid.initialize({{ startOnLoad: false, securityLevel: "strict" }});
            await mermaid.run({{ querySelector: ".mermaid" }});
          }}
        }} catch (error) {{
          console.error("mdfield Mermaid render failed:", error);
        }}
      }}
      try {{
        if (await window.__mdfieldLoadFirstScript(window.__mdfieldMathJaxSources, () => !!(window.MathJax && MathJax.typesetPromise))) {{
          if (MathJax.startup && MathJax.startup.promise) {{
            await MathJax.startup.promise;
          }}
          await MathJax.typesetPromise();
        }}
      }} catch (error) {{
        console.error("mdfield MathJax render failed:", error);
      }}
    }};
  </script>
</head>
<body>
  <main>{body}</main>
  <script>
    window.addEventListener('DOMContentLoaded', () => {{
      window.__mdfieldRunClientRenderers();
    }});
  </script>
</body>
</html>
"""


def render_document(markdown_text: str, title: str, config: AppConfig | None = None) -> str:
    return MarkdownRenderer(config).render_document(markdown_text, title)

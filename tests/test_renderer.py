"""Tests for tree building and HTML serialization."""

import pytest

from mdfield.config import AppConfig
from mdfield.errors import DiagramError
from mdfield.extensions import Extension, ExtensionRegistry, default_registry
from mdfield.nodes import (
    AlertBlock,
    BlockQuote,
    CodeBlock,
    DiagramBlock,
    Document,
    ErrorNode,
    ExtensionMatch,
    Heading,
    MathNode,
    Paragraph,
    Table,
    Text,
    text_content,
    walk,
)
from mdfield.normalizer import normalize
from mdfield.renderer import MarkdownRenderer, clean_image_url, parse_code_info, render, render_document, to_html
from mdfield.sanitizer import sanitize


class FakeDiagramEngine:
    languages = ("mermaid",)

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def render_diagram(self, source, language):
        self.calls.append((language, source))
        if self.fail:
            raise DiagramError("syntax error in graph")
        return '<div class="mdfield-diagram"><svg></svg></div>'


class ExplodingParagraphs(Extension):
    name = "exploding"
    node_types = ("paragraph",)

    def match(self, node):
        return ExtensionMatch(kind="boom", raw="")

    def build(self, match, builder):
        raise RuntimeError("boom")


class ExplodingCodeSpans(Extension):
    name = "exploding-code"
    node_types = ("code_inline",)

    def match(self, node):
        return ExtensionMatch(kind="boom", raw=node.content)

    def build(self, match, builder):
        raise KeyError("missing")


def nodes_of(doc, kind):
    return [node for node in walk(doc) if isinstance(node, kind)]


class TestTreeBuilding:
    def test_empty_and_non_string_input(self):
        assert render("") == Document()
        assert render(None) == Document()

    def test_heading(self):
        assert render("## Hi").children == (Heading(level=2, children=(Text(text="Hi"),)),)

    def test_short_table_rows_are_padded(self):
        doc = render("a|b|c\n-|-|-\n1|2")
        table = doc.children[0]
        assert isinstance(table, Table)
        assert len(table.children) == 2
        assert all(len(row.children) == 3 for row in table.children)
        assert table.children[0].children[0].header is True
        assert text_content(table.children[1].children[2]) == ""

    def test_long_table_rows_are_truncated(self):
        table = render("a|b|c\n-|-|-\n1|2|3|4").children[0]
        assert isinstance(table, Table)
        assert all(len(row.children) == 3 for row in table.children)
        assert "4" not in [text_content(cell) for cell in table.children[1].children]
        assert "4" not in to_html(table)

    def test_table_alignments(self):
        table = render("a|b|c\n:-|:-:|-:\n1|2|3").children[0]
        assert table.alignments == ("left", "center", "right")
        assert [cell.align for cell in table.children[1].children] == ["left", "center", "right"]

    def test_ordered_list_start(self):
        assert render("5. x").children[0].start == 5
        assert render("1. x").children[0].start is None

    def test_list_tightness(self):
        assert render("- a\n- b").children[0].tight is True
        assert render("- a\n\n- b").children[0].tight is False

    def test_fenced_code_with_highlight_lines(self):
        block = render("```js{1,3-5}\nlet a;\n```").children[0]
        assert block == CodeBlock(language="js", code="let a;\n", highlight_lines=(1, 3, 4, 5))

    def test_failing_block_becomes_error_node(self):
        doc = render("# Title\n\nbody", ExtensionRegistry([ExplodingParagraphs()]))
        heading, error = doc.children
        assert isinstance(heading, Heading)
        assert isinstance(error, ErrorNode)
        assert error.kind == "render"
        assert error.source == "body"
        assert "boom" in error.message

    def test_failing_inline_extension_keeps_the_block(self):
        doc = render("a `x` b", ExtensionRegistry([ExplodingCodeSpans()]))
        paragraph = doc.children[0]
        assert isinstance(paragraph, Paragraph)
        first, error, last = paragraph.children
        assert first == Text(text="a ")
        assert last == Text(text=" b")
        assert isinstance(error, ErrorNode)
        assert error.display is False
        assert error.source == "x"
        assert "missing" in error.message


class TestMath:
    def test_display_dollars(self):
        doc = render("$$x^2$$")
        assert len(doc.children) == 1
        math = doc.children[0]
        assert isinstance(math, MathNode)
        assert math.display is True
        assert math.tex == "x^2"

    def test_inline_parentheses(self):
        maths = nodes_of(render("see \\(a+b\\) here"), MathNode)
        assert len(maths) == 1
        assert maths[0].display is False
        assert maths[0].tex == "a+b"

    def test_inline_brackets_are_display(self):
        (math,) = nodes_of(render("so \\[a=b\\] there"), MathNode)
        assert math.display is True

    def test_bracket_block(self):
        math = render("\\[\nx = 1\n\\]").children[0]
        assert isinstance(math, MathNode)
        assert math.display is True
        assert math.tex == "x = 1"

    def test_single_dollar_across_lines_is_display(self):
        (math,) = nodes_of(render("x $a\nb$ y"), MathNode)
        assert math.display is True

    def test_broken_formula_is_repaired(self):
        math = render("$$\\left( x$$").children[0]
        assert isinstance(math, MathNode)
        assert math.tex == "\\left( x \\right."


class TestDiagrams:
    def test_diagram_fence_becomes_diagram_block(self):
        engine = FakeDiagramEngine()
        doc = render("```mermaid\ngraph TD\nA-->B\n```", default_registry(diagram_engine=engine))
        block = doc.children[0]
        assert isinstance(block, DiagramBlock)
        assert block.language == "mermaid"
        assert block.source == "graph TD\nA-->B\n"
        assert engine.calls == [("mermaid", "graph TD\nA-->B\n")]

    def test_engine_failure_becomes_error_node(self):
        doc = render("```mermaid\ngraph\n```", default_registry(diagram_engine=FakeDiagramEngine(fail=True)))
        error = doc.children[0]
        assert isinstance(error, ErrorNode)
        assert error.kind == "diagram"
        assert error.message == "syntax error in graph"
        assert error.source == "graph\n"

    def test_other_fences_stay_code(self):
        doc = render("```python\nx = 1\n```", default_registry(diagram_engine=FakeDiagramEngine()))
        assert isinstance(doc.children[0], CodeBlock)

    def test_default_mermaid_markup(self):
        out = to_html(render("```mermaid\ngraph TD\nA-->B\n```"))
        assert 'class="mermaid mdfield-diagram"' in out
        assert "A--&gt;B" in out
        assert "overflow: visible !important" in out


class TestAlerts:
    def test_paragraph_alert(self):
        doc = render(normalize("\n[!WARNING] do X\n"))
        (alert,) = doc.children
        assert isinstance(alert, AlertBlock)
        assert alert.alert_type == "warning"
        assert alert.title == ""
        assert text_content(alert) == "do X"

    def test_blockquote_alert_with_title(self):
        (alert,) = render("> [!NOTE] Heads up\n> body text").children
        assert alert.alert_type == "note"
        assert alert.title == "Heads up"
        assert alert.children == (Paragraph(children=(Text(text="body text"),)),)

    def test_blockquote_alert_without_title(self):
        (alert,) = render("> [!tip] only body").children
        assert alert.alert_type == "tip"
        assert alert.title == ""
        assert text_content(alert) == "only body"

    def test_plain_blockquote_is_untouched(self):
        assert isinstance(render("> just a quote").children[0], BlockQuote)

    def test_alert_html(self):
        out = to_html(render("[!CAUTION] hot"))
        assert 'class="mdfield-callout mdfield-callout-caution"' in out
        assert ">Caution</span>" in out
        assert "hot" in out


class TestHtml:
    def test_inline_formatting(self):
        assert to_html(render("*a* **b** ~~c~~ `d`")) == "<p><em>a</em> <strong>b</strong> <s>c</s> <code>d</code></p>"

    def test_text_is_escaped(self):
        assert to_html(render("5 < 6 & 7")) == "<p>5 &lt; 6 &amp; 7</p>"

    def test_links_open_in_new_tab(self):
        assert to_html(render("[x](https://a.example)")) == (
            '<p><a href="https://a.example" target="_blank" rel="noopener noreferrer">x</a></p>'
        )

    def test_code_block(self):
        assert to_html(render("```js{2}\nlet a = 1 < 2;\n```")) == (
            '<pre><code class="language-js" data-highlight-lines="2">let a = 1 &lt; 2;\n</code></pre>'
        )

    def test_tight_list(self):
        assert to_html(render("- a\n- b")) == "<ul>\n<li>a</li>\n<li>b</li>\n</ul>"

    def test_ordered_list_start_attribute(self):
        assert to_html(render("3. c\n4. d")).startswith('<ol start="3">')

    def test_table(self):
        assert to_html(render("a|b\n:-|-:\n1|2")) == (
            '<table><thead><tr><th style="text-align:left">a</th><th style="text-align:right">b</th></tr></thead>'
            '<tbody><tr><td style="text-align:left">1</td><td style="text-align:right">2</td></tr></tbody></table>'
        )

    def test_raw_script_is_dropped(self):
        out = to_html(render("<script>alert(1)</script>\n\ntext"))
        assert "script" not in out
        assert "<p>text</p>" in out

    def test_error_node_html(self):
        out = to_html(ErrorNode(kind="math", message="bad <tex>", source="\\frac{", display=False))
        assert out == '<span class="mdfield-error mdfield-error-math" title="bad &lt;tex&gt;"><code>\\frac{</code></span>'

    @pytest.mark.parametrize(
        "source, expected",
        [
            ('a <span style="color:red">red</span> b', '<p>a <span style="color:red">red</span> b</p>'),
            ("press <kbd>Ctrl</kbd>", "<p>press <kbd>Ctrl</kbd></p>"),
            ("H<sub>2</sub>O and <mark>**hot**</mark>", "<p>H<sub>2</sub>O and <mark><strong>hot</strong></mark></p>"),
        ],
    )
    def test_inline_html_keeps_its_content(self, source, expected):
        assert to_html(sanitize(render(normalize(source)))) == expected

    def test_inline_html_in_table_cell(self):
        out = to_html(sanitize(render("a|b\n-|-\n<kbd>x</kbd>|y")))
        assert "<td><kbd>x</kbd></td>" in out

    def test_inline_script_is_dropped_with_content(self):
        out = to_html(render("a <script>alert(1)</script> b"))
        assert "script" not in out
        assert "alert" not in out

    def test_inline_handlers_are_removed(self):
        out = to_html(sanitize(render('x <span onclick="x()">y</span>')))
        assert out == "<p>x <span>y</span></p>"


@pytest.mark.parametrize(
    "info, expected",
    [
        ("js{1,3-5}", ("js", (1, 3, 4, 5))),
        ("", ("", ())),
        ("Python {x,2}", ("python", (2,))),
        ("sh{4-2}", ("sh", (2, 3, 4))),
    ],
)
def test_parse_code_info(info, expected):
    assert parse_code_info(info) == expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("'https://x.example/a.png'", "https://x.example/a.png"),
        ("a&amp;b.png", "a&b.png"),
        ("https:///no-host.png", ""),
        ("  ", ""),
    ],
)
def test_clean_image_url(url, expected):
    assert clean_image_url(url) == expected


class TestMarkdownRenderer:
    def test_pipeline_normalizes_and_sanitizes(self):
        renderer = MarkdownRenderer(AppConfig())
        out = renderer.render_html("Intro\n[!TIP] use it\n\n<img src=x onerror=\"alert(1)\">")
        assert "mdfield-callout-tip" in out
        assert "<p>Intro</p>" in out
        assert "onerror" not in out

    def test_render_tree_is_sanitized(self):
        doc = MarkdownRenderer(AppConfig()).render_tree('<a href="javascript:alert(1)">x</a>')
        assert "javascript" not in to_html(doc)

    def test_render_document(self):
        page = render_document("**bold**", "My <cell>")
        assert page.startswith("<!doctype html>")
        assert "<title>My &lt;cell&gt;</title>" in page
        assert "<strong>bold</strong>" in page
        assert "mathjax" in page.lower()

import pytest

from mdfield.errors import FormulaError
from mdfield.extensions import (
    AlertExtension,
    DiagramExtension,
    Extension,
    ExtensionRegistry,
    MathExtension,
    default_registry,
    fence_language,
    repair_tex,
)
from mdfield.nodes import ErrorNode, ExtensionMatch, MathNode
from mdfield.renderer import render


class RejectingFormulaEngine:
    """Fails every formula, recording what it was asked to render."""

    def __init__(self):
        self.seen = []

    def render_formula(self, tex, display):
        self.seen.append(tex)
        raise FormulaError("Undefined control sequence")


class Named(Extension):
    def __init__(self, name):
        self.name = name


@pytest.mark.parametrize(
    "tex, expected",
    [
        ("\\left( x", "\\left( x \\right."),
        ("x \\right)", "\\left. x \\right)"),
        ("\\frac{a}{b", "\\frac{a}{b}"),
        ("a}", "{a}"),
        ("x_1 + y^2", "x_{1} + y^{2}"),
        ("x_{12}", "x_{12}"),
        ("\\frac {a}{b}", "\\frac{a}{b}"),
        ("a \\leftarrow b", "a \\leftarrow b"),
        ("\\{ a", "\\{ a"),
    ],
)
def test_repair_tex(tex, expected):
    assert repair_tex(tex) == expected


@pytest.mark.parametrize(
    "info, expected",
    [("mermaid", "mermaid"), ("PlantUML {1}", "plantuml"), ("js{1,2}", "js"), ("", ""), (None, "")],
)
def test_fence_language(info, expected):
    assert fence_language(info) == expected


def test_unrepairable_formula_becomes_error_node():
    engine = RejectingFormulaEngine()
    doc = render("$$x^2$$", default_registry(formula_engine=engine))

    error = doc.children[0]
    assert isinstance(error, ErrorNode)
    assert error.kind == "math"
    assert error.message == "Undefined control sequence"
    assert error.source == "x^2"
    assert engine.seen == ["x^2", "x^{2}"]


def test_formula_is_not_retried_when_repair_changes_nothing():
    engine = RejectingFormulaEngine()
    render("$y$", default_registry(formula_engine=engine))
    assert engine.seen == ["y"]


def test_inline_error_node_is_not_display():
    doc = render("a $y$ b", default_registry(formula_engine=RejectingFormulaEngine()))
    (error,) = [node for node in doc.children[0].children if isinstance(node, ErrorNode)]
    assert error.display is False


def test_math_rendered_through_engine_markup():
    (math,) = render("$$a+b$$").children
    assert isinstance(math, MathNode)
    assert math.markup == '<div class="mdfield-math-block">$$\na+b\n$$</div>'


class TestRegistry:
    def test_default_order(self):
        assert default_registry().names == ("math", "diagram", "alert")

    def test_duplicate_names_are_rejected(self):
        registry = ExtensionRegistry([Named("a")])
        with pytest.raises(ValueError):
            registry.register(Named("a"))

    def test_register_before(self):
        registry = ExtensionRegistry([Named("a"), Named("c")])
        registry.register(Named("b"), before="c")
        assert registry.names == ("a", "b", "c")
        assert len(registry) == 3
        assert registry.get("b").name == "b"
        assert registry.get("zzz") is None

    def test_parser_is_cached_until_registration(self):
        registry = ExtensionRegistry([MathExtension()])
        parser = registry.parser()
        assert registry.parser() is parser
        registry.register(AlertExtension())
        assert registry.parser() is not parser

    def test_first_matching_extension_wins(self):
        class Greedy(Extension):
            name = "greedy"
            node_types = ("fence",)

            def match(self, node):
                return ExtensionMatch(kind="greedy", raw=node.content)

            def build(self, match, builder):
                return ErrorNode(kind="render", message="claimed")

        registry = ExtensionRegistry([Greedy(), DiagramExtension()])
        doc = render("```mermaid\ngraph\n```", registry)
        assert doc.children[0] == ErrorNode(kind="render", message="claimed")

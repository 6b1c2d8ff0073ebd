"""Formula and diagram engines used by the math and diagram extensions.

An engine turns the source of one construct into display markup or raises
``FormulaError`` / ``DiagramError``. The MathJax and Mermaid engines emit
markup that the browser-side libraries typeset later; PlantUML is rendered
locally through ``plantuml.jar``.
"""

from __future__ import annotations

import base64
import hashlib
import html
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Protocol

from .errors import DiagramError, FormulaError

logger = logging.getLogger(__name__)

MATHJAX_CDN_SOURCES = (
    "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-svg.js",
    "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js",
)
MERMAID_CDN_SOURCES = ("https://cdn.jsdelivr.net/npm/mermaid@11/dist/mermaid.min.js",)
PLANTUML_TIMEOUT_SECONDS = 20

_LEFT_RE = re.compile(r"\\left(?![A-Za-z])")
_RIGHT_RE = re.compile(r"\\right(?![A-Za-z])")
_ESCAPED_BRACE_RE = re.compile(r"\\[{}]")

_APP_DIR = Path(__file__).resolve().parent


class FormulaEngine(Protocol):
    def render_formula(self, tex: str, display: bool) -> str: ...


class DiagramEngine(Protocol):
    def render_diagram(self, source: str, language: str) -> str: ...


def _first_existing_file(candidates: Iterable[Path]) -> Path | None:
    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate.resolve()
        except OSError:
            continue
    return None


def _script_sources(local_script: Path | None, cdn_sources: Iterable[str]) -> list[str]:
    sources: list[str] = []
    if local_script is not None:
        sources.append(local_script.as_uri())
    sources.extend(cdn_sources)
    # Keep order while dropping duplicates.
    return list(dict.fromkeys(sources))


def resolve_local_mathjax_script(override: str | None = None) -> Path | None:
    """Locate a local MathJax bundle, preferring SVG output."""
    candidates: list[Path] = []
    if override:
        candidates.append(Path(override).expanduser())
    for bundle in ("tex-svg.js", "tex-mml-chtml.js"):
        candidates.extend(
            [
                _APP_DIR / "vendor" / "mathjax" / "es5" / bundle,
                _APP_DIR / "assets" / "mathjax" / "es5" / bundle,
                Path("/usr/share/javascript/mathjax/es5") / bundle,
                Path("/usr/share/mathjax/es5") / bundle,
                Path("/usr/share/nodejs/mathjax/es5") / bundle,
            ]
        )
    return _first_existing_file(candidates)


def resolve_local_mermaid_script(override: str | None = None) -> Path | None:
    """Locate a local Mermaid bundle to use before the CDN."""
    candidates: list[Path] = []
    if override:
        candidates.append(Path(override).expanduser())
    candidates.extend(
        [
            _APP_DIR / "vendor" / "mermaid" / "mermaid.min.js",
            _APP_DIR / "vendor" / "mermaid" / "dist" / "mermaid.min.js",
            _APP_DIR / "assets" / "mermaid" / "mermaid.min.js",
            Path("/usr/share/javascript/mermaid/mermaid.min.js"),
            Path("/usr/share/nodejs/mermaid/dist/mermaid.min.js"),
        ]
    )
    return _first_existing_file(candidates)


def resolve_plantuml_jar(override: str | None = None) -> Path | None:
    candidates: list[Path] = []
    if override:
        candidates.append(Path(override).expanduser())
    env_value = os.environ.get("PLANTUML_JAR", "").strip()
    if env_value:
        candidates.append(Path(env_value).expanduser())
    candidates.append(_APP_DIR / "vendor" / "plantuml" / "plantuml.jar")
    candidates.append(Path.cwd() / "plantuml.jar")
    return _first_existing_file(candidates)


def check_formula_structure(tex: str) -> None:
    """Raise ``FormulaError`` for unbalanced braces or ``\\left``/``\\right``."""
    lefts = len(_LEFT_RE.findall(tex))
    rights = len(_RIGHT_RE.findall(tex))
    if lefts != rights:
        raise FormulaError(f"unbalanced \\left/\\right ({lefts} vs {rights})")

    depth = 0
    for char in _ESCAPED_BRACE_RE.sub("", tex):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                raise FormulaError("unexpected '}'")
    if depth:
        raise FormulaError(f"missing {depth} closing brace(s)")


class MathJaxFormulaEngine:
    """Validates TeX and wraps it for client-side MathJax typesetting."""

    def __init__(self, local_script: str | None = None):
        self.local_script = resolve_local_mathjax_script(local_script)

    def script_sources(self) -> list[str]:
        return _script_sources(self.local_script, MATHJAX_CDN_SOURCES)

    def render_formula(self, tex: str, display: bool) -> str:
        body = tex.strip("\n") if display else tex.strip()
        if not body.strip():
            raise FormulaError("empty formula")
        check_formula_structure(body)
        # Keep TeX raw for MathJax, only HTML-escape unsafe chars.
        if display:
            return f'<div class="mdfield-math-block">$$\n{html.escape(body)}\n$$</div>'
        return f'<span class="mdfield-math">\\({html.escape(body)}\\)</span>'


def prepare_mermaid_source(code: str) -> str:
    """Normalize Mermaid source for stable hashing."""
    return code.replace("\r\n", "\n").strip("\n")


class MermaidClientEngine:
    """Emits Mermaid placeholders for the browser-side renderer."""

    languages = ("mermaid",)

    def __init__(self, local_script: str | None = None):
        self.local_script = resolve_local_mermaid_script(local_script)

    def script_sources(self) -> list[str]:
        return _script_sources(self.local_script, MERMAID_CDN_SOURCES)

    def render_diagram(self, source: str, language: str) -> str:
        prepared = prepare_mermaid_source(source)
        if not prepared.strip():
            raise DiagramError("empty mermaid diagram")
        digest = hashlib.sha1(prepared.encode("utf-8", errors="replace")).hexdigest()
        return (
            f'<div class="mermaid mdfield-diagram" data-mdfield-mermaid-hash="{digest}">\n'
            f"{html.escape(prepared)}\n</div>"
        )


def extract_plantuml_error_details(stderr_text: str) -> str:
    """Parse PlantUML stderr into a readable message."""
    raw = (stderr_text or "").replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in raw.split("\n") if line.strip()]
    if not lines:
        return "unknown error"
    # PlantUML reports "ERROR", the line number, then the message.
    if len(lines) >= 3 and lines[0].upper() == "ERROR" and lines[1].isdigit():
        return f"line {lines[1]}: {lines[2]}"
    return "\n".join(lines[:8])


def prepare_plantuml_source(code: str) -> str:
    """Add ``@startuml``/``@enduml`` to shorthand fences."""
    normalized = code.replace("\r\n", "\n").strip("\n")
    if not normalized:
        return "@startuml\n@enduml\n"
    has_start_directive = any(
        line.strip().casefold().startswith("@start")
        for line in normalized.splitlines()
        if line.strip()
    )
    if has_start_directive:
        return normalized + "\n"
    return f"@startuml\n{normalized}\n@enduml\n"


class PlantUmlEngine:
    """Renders PlantUML with a local ``plantuml.jar`` into an SVG data URI."""

    languages = ("plantuml", "puml", "uml")

    def __init__(self, jar_path: str | None = None, java: str = "java", timeout: float = PLANTUML_TIMEOUT_SECONDS):
        self.jar_path = resolve_plantuml_jar(jar_path)
        self.java = java
        self.timeout = timeout
        self._svg_cache: dict[str, str] = {}

    def setup_error(self) -> str | None:
        if self.jar_path is None:
            return "plantuml.jar not found (set PLANTUML_JAR or place jar at vendor/plantuml/plantuml.jar)"
        if shutil.which(self.java) is None:
            return "Java runtime not found in PATH; install Java to render PlantUML diagrams"
        return None

    def _run_jar(self, prepared: str) -> str:
        command = [
            self.java,
            "-Djava.awt.headless=true",
            "-jar",
            str(self.jar_path),
            "-pipe",
            "-tsvg",
            "-charset",
            "UTF-8",
        ]
        try:
            result = subprocess.run(
                command,
                input=prepared,
                text=True,
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise DiagramError("local PlantUML render timed out") from exc
        except OSError as exc:
            raise DiagramError(f"local PlantUML render failed: {exc}") from exc

        if result.returncode != 0:
            details = extract_plantuml_error_details(result.stderr or "")
            raise DiagramError(f"local PlantUML render failed: {details}")
        svg_text = (result.stdout or "").strip()
        if "<svg" not in svg_text.casefold():
            raise DiagramError("local PlantUML did not return SVG output")
        return svg_text

    def render_diagram(self, source: str, language: str) -> str:
        prepared = prepare_plantuml_source(source)
        cache_key = hashlib.sha1(prepared.encode("utf-8", errors="replace")).hexdigest()
        data_uri = self._svg_cache.get(cache_key)
        if data_uri is None:
            issue = self.setup_error()
            if issue is not None:
                raise DiagramError(issue)
            svg_text = self._run_jar(prepared)
            encoded_svg = base64.b64encode(svg_text.encode("utf-8")).decode("ascii")
            data_uri = f"data:image/svg+xml;base64,{encoded_svg}"
            self._svg_cache[cache_key] = data_uri
            logger.debug("rendered PlantUML diagram %s", cache_key[:12])
        return (
            '<div class="mdfield-diagram plantuml">'
            f'<img class="plantuml" src="{data_uri}" alt="PlantUML diagram"/>'
            "</div>"
        )


class DiagramEngineRouter:
    """Dispatches diagrams to the engine registered for their language."""

    def __init__(self, engines: Iterable[DiagramEngine] = ()):
        self._by_language: dict[str, DiagramEngine] = {}
        for engine in engines:
            for language in getattr(engine, "languages", ()):
                self.register(language, engine)

    def register(self, language: str, engine: DiagramEngine) -> None:
        self._by_language[language.lower()] = engine

    @property
    def languages(self) -> tuple[str, ...]:
        return tuple(self._by_language)

    def render_diagram(self, source: str, language: str) -> str:
        engine = self._by_language.get(language.lower())
        if engine is None:
            raise DiagramError(f"no diagram engine for {language!r}")
        return engine.render_diagram(source, language)

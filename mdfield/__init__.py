"""mdfield: markdown normalizer, renderer and sanitizer for editable cells."""

from .errors import (
    DiagramError,
    ExtensionEngineFailure,
    ExternalStoreFailure,
    FormulaError,
    MdFieldError,
    NormalizationFailure,
    RenderFailure,
    SanitizationViolation,
)
from .extensions import ExtensionRegistry, default_registry, repair_tex
from .normalizer import normalize
from .renderer import MarkdownRenderer, render, render_document, to_html
from .sanitizer import sanitize
from .session import EditingSession, SaveState, SessionController, SessionSnapshot, SwitchDecision
from .store import CellRef, CellStore, JsonFileCellStore, MemoryCellStore, RetryingCellStore, coerce_cell_text

__version__ = "0.1.0"

__all__ = [
    "CellRef",
    "CellStore",
    "DiagramError",
    "EditingSession",
    "ExtensionEngineFailure",
    "ExtensionRegistry",
    "ExternalStoreFailure",
    "FormulaError",
    "JsonFileCellStore",
    "MarkdownRenderer",
    "MdFieldError",
    "MemoryCellStore",
    "NormalizationFailure",
    "RenderFailure",
    "RetryingCellStore",
    "SanitizationViolation",
    "SaveState",
    "SessionController",
    "SessionSnapshot",
    "SwitchDecision",
    "coerce_cell_text",
    "default_registry",
    "normalize",
    "render",
    "render_document",
    "repair_tex",
    "sanitize",
    "to_html",
]

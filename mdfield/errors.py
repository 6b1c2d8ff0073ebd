"""Error taxonomy shared by the pipeline stages and the editing session."""

from __future__ import annotations


class MdFieldError(Exception):
    """Base class for every error raised inside mdfield."""


class NormalizationFailure(MdFieldError):
    """A single normalizer pass failed; the pass is skipped."""

    def __init__(self, pass_name: str, cause: BaseException):
        super().__init__(f"normalizer pass {pass_name!r} failed: {cause}")
        self.pass_name = pass_name
        self.cause = cause


class RenderFailure(MdFieldError):
    """Building one node failed; the node is replaced with an error node."""


class SanitizationViolation(MdFieldError):
    """Markup contained something outside the allowlist."""


class ExternalStoreFailure(MdFieldError):
    """Reading or writing a cell through the store failed."""

    def __init__(self, message: str, *, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class ExtensionEngineFailure(MdFieldError):
    """An external math or diagram engine rejected its input."""


class FormulaError(ExtensionEngineFailure):
    """The TeX engine reported a formula error."""


class DiagramError(ExtensionEngineFailure):
    """The diagram engine could not produce markup."""

"""Error definitions for the htmlshift translator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categorises runtime errors reported per document."""

    ARGUMENT = auto()
    FILE_IO = auto()
    FORMAT = auto()
    TRANSLATION = auto()
    NETWORK = auto()
    OTHER = auto()


class HtmlShiftError(Exception):
    """Base exception for all custom errors."""


class TranslationAborted(HtmlShiftError):
    """Raised when a cancellation signal stops a translation early."""


class UnsupportedFileTypeError(HtmlShiftError):
    """Raised when a given file extension is not supported."""


class OverwriteRefusedError(HtmlShiftError):
    """Raised when attempting to overwrite an output without consent."""


class TranslationProviderConfigurationError(HtmlShiftError):
    """Raised when the translation endpoint is misconfigured."""


class TranslationProviderError(HtmlShiftError):
    """Raised when a translation request fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(TranslationProviderError):
    """A failure that is expected to succeed on retry (timeouts, 429, 5xx)."""


class MalformedResponseError(TranslationProviderError):
    """The endpoint answered, but not with anything we can read."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    details: Optional[str] = None

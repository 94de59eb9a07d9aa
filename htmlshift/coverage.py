"""Target-language coverage estimate used to skip translated documents."""

from __future__ import annotations

from typing import Callable, Dict, Sequence, Tuple

from .documents import iter_translatable_text, parse_document
from .structures import CoverageSample, Document

SKIP_THRESHOLD = 0.90
DEFAULT_LANGUAGE = "zh"

_KNOWN_PREFIXES = ("zh", "ja", "ko", "en", "ru", "es", "fr", "de")

Range = Tuple[int, int]

_CJK: Sequence[Range] = (
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0x3400, 0x4DBF),  # Extension A
    (0xF900, 0xFAFF),  # Compatibility Ideographs
)
_KANA: Sequence[Range] = (
    (0x3040, 0x309F),  # Hiragana
    (0x30A0, 0x30FF),  # Katakana
    (0xFF66, 0xFF9D),  # Half-width katakana
)
_HANGUL: Sequence[Range] = (
    (0xAC00, 0xD7AF),  # Syllables
    (0x1100, 0x11FF),  # Jamo
    (0x3130, 0x318F),  # Compatibility Jamo
)
_BASIC_LATIN: Sequence[Range] = ((0x41, 0x5A), (0x61, 0x7A))
_EXTENDED_LATIN: Sequence[Range] = _BASIC_LATIN + ((0x00C0, 0x024F),)
_CYRILLIC: Sequence[Range] = ((0x0400, 0x04FF),)

SCRIPT_RANGES: Dict[str, Sequence[Range]] = {
    "zh": _CJK,
    "ja": tuple(_KANA) + tuple(_CJK),
    "ko": _HANGUL,
    "en": _BASIC_LATIN,
    "es": _EXTENDED_LATIN,
    "fr": _EXTENDED_LATIN,
    "de": _EXTENDED_LATIN,
    "ru": _CYRILLIC,
}


def normalize_language(code: str | None) -> str:
    """Reduce a language tag to the key used by the script table."""

    if code is None or not code.strip():
        return DEFAULT_LANGUAGE
    lowered = code.strip().lower()
    for prefix in _KNOWN_PREFIXES:
        if lowered.startswith(prefix):
            return prefix
    return lowered


def target_letter_predicate(language: str) -> Callable[[str], bool]:
    """Return a predicate telling whether a letter belongs to the target script.

    Languages without an entry in ``SCRIPT_RANGES`` never match, so coverage
    stays at zero and such documents are always translated.
    """

    ranges = SCRIPT_RANGES.get(normalize_language(language), ())

    def predicate(char: str) -> bool:
        code = ord(char)
        return any(low <= code <= high for low, high in ranges)

    return predicate


def measure_coverage(document: Document, target_language: str | None) -> CoverageSample:
    """Count letters in translatable text and how many are in the target script."""

    is_target = target_letter_predicate(normalize_language(target_language))
    sample = CoverageSample()
    for node in iter_translatable_text(document):
        for char in str(node):
            if not char.isalpha():
                continue
            sample.total_letters += 1
            if is_target(char):
                sample.target_letters += 1
    return sample


def coverage_decision(sample: CoverageSample) -> Tuple[bool, float]:
    """Apply the skip threshold to a sample."""

    if sample.total_letters == 0:
        return False, 0.0
    coverage = sample.coverage
    return coverage >= SKIP_THRESHOLD, coverage


def should_skip_markup(markup: str, target_language: str | None) -> Tuple[bool, float]:
    """Decide whether markup is already written in the target language."""

    if not markup:
        return False, 0.0
    document = parse_document(markup)
    return coverage_decision(measure_coverage(document, target_language))

"""Core data structures for the htmlshift translator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from bs4 import BeautifulSoup, NavigableString, Tag


@dataclass(eq=False)
class Document:
    """A parsed markup document and the text it was parsed from."""

    soup: BeautifulSoup
    source: str
    # Set once a unit is written back; until then the source is emitted as is.
    changed: bool = False


@dataclass
class TranslationUnit:
    """One text node or attribute value eligible for translation."""

    index: int
    source_core: str
    leading_whitespace: str
    trailing_whitespace: str
    node: Union[NavigableString, Tag]
    location: str
    attribute_name: Optional[str] = None

    @property
    def is_attribute(self) -> bool:
        return self.attribute_name is not None


@dataclass(frozen=True)
class Batch:
    """A contiguous range of unit indices submitted as one request."""

    start: int
    length: int
    tag: str

    @property
    def stop(self) -> int:
        return self.start + self.length


@dataclass
class CoverageSample:
    """Letter counts used once per document for the skip decision."""

    target_letters: int = 0
    total_letters: int = 0

    @property
    def coverage(self) -> float:
        if self.total_letters == 0:
            return 0.0
        return self.target_letters / self.total_letters

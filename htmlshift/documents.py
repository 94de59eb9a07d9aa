"""Document parsing, unit extraction and reinsertion utilities."""

from __future__ import annotations

import pathlib
import re
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from bs4.dammit import EntitySubstitution
from bs4.element import (
    CData,
    Comment,
    Declaration,
    Doctype,
    NavigableString,
    ProcessingInstruction,
    Tag,
)
from bs4.formatter import HTMLFormatter

from .errors import HtmlShiftError, UnsupportedFileTypeError
from .structures import Document, TranslationUnit

SKIP_TAGS = frozenset(
    {"script", "style", "noscript", "code", "pre", "kbd", "samp", "var", "svg", "math"}
)
ANCHOR_TAG = "a"
TRANSLATABLE_ATTRIBUTES = frozenset({"alt", "title", "aria-label"})

# Strings bs4 keeps in the tree that are markup rather than text.
NON_TEXT_STRINGS = (Comment, CData, Declaration, Doctype, ProcessingInstruction)

SUPPORTED_SUFFIXES = (".html", ".htm", ".xhtml")

LEADING_WS = re.compile(r"^\s+")
TRAILING_WS = re.compile(r"\s+$")
LINE_BREAKS = re.compile(r"[\r\n]+")
PLACEHOLDER_ARTIFACT = re.compile(r"\$\$\s*i\s*\$\$", re.IGNORECASE)


class SourceOrderFormatter(HTMLFormatter):
    """Minimal escaping, attributes in source order, void elements without a slash."""

    def __init__(self) -> None:
        super().__init__(
            entity_substitution=EntitySubstitution.substitute_xml,
            void_element_close_prefix=None,
            empty_attributes_are_booleans=True,
        )

    def attributes(self, tag):
        if tag.attrs is None:
            return []
        return [
            (name, None if self.empty_attributes_are_booleans and value == "" else value)
            for name, value in tag.attrs.items()
        ]


OUTPUT_FORMATTER = SourceOrderFormatter()


def parse_document(markup: str) -> Document:
    """Parse markup into a Document backed by a BeautifulSoup tree."""

    soup = BeautifulSoup(markup, "html.parser", multi_valued_attributes=None)
    return Document(soup=soup, source=markup)


def serialize(document: Document) -> str:
    """Serialize a Document back to markup.

    A document with no written-back units is returned exactly as it was read.
    Otherwise the tree is rendered with :data:`OUTPUT_FORMATTER`.
    """

    if not document.changed:
        return document.source
    return document.soup.decode(formatter=OUTPUT_FORMATTER)


def _walk(
    element: Tag,
    *,
    in_skip: bool = False,
    in_anchor: bool = False,
) -> Iterator[Tuple[Union[Tag, NavigableString], bool, bool]]:
    for child in element.children:
        if isinstance(child, Tag):
            child_skip = in_skip or child.name in SKIP_TAGS
            child_anchor = in_anchor or child.name == ANCHOR_TAG
            yield child, child_skip, child_anchor
            yield from _walk(child, in_skip=child_skip, in_anchor=child_anchor)
        else:
            yield child, in_skip, in_anchor


def _is_text(node) -> bool:
    return isinstance(node, NavigableString) and not isinstance(node, NON_TEXT_STRINGS)


def iter_translatable_text(document: Document) -> Iterator[NavigableString]:
    """Yield text nodes that are outside skipped subtrees and links."""

    for node, in_skip, in_anchor in _walk(document.soup):
        if _is_text(node) and not in_skip and not in_anchor:
            yield node


def split_edge_whitespace(raw: str) -> Tuple[str, str, str]:
    """Split raw text into leading whitespace, core and trailing whitespace."""

    leading_match = LEADING_WS.search(raw)
    leading = leading_match.group(0) if leading_match else ""
    if len(leading) == len(raw):
        return leading, "", ""
    trailing_match = TRAILING_WS.search(raw)
    trailing = trailing_match.group(0) if trailing_match else ""
    core = raw[len(leading) : len(raw) - len(trailing)]
    return leading, core, trailing


def normalise_for_request(text: str) -> str:
    """Replace carriage returns and line feeds so a unit stays on one line."""

    return text.replace("\r", " ").replace("\n", " ")


def extract_units(document: Document) -> List[TranslationUnit]:
    """Collect translation units in document order without touching the tree."""

    units: List[TranslationUnit] = []

    def add(
        raw: Optional[str],
        *,
        node: Union[Tag, NavigableString],
        location: str,
        attribute_name: Optional[str] = None,
    ) -> None:
        if not raw:
            return
        leading, core, trailing = split_edge_whitespace(raw)
        if not core:
            return
        units.append(
            TranslationUnit(
                index=len(units),
                source_core=normalise_for_request(core),
                leading_whitespace=leading,
                trailing_whitespace=trailing,
                node=node,
                location=location,
                attribute_name=attribute_name,
            )
        )

    for node, in_skip, in_anchor in _walk(document.soup):
        if isinstance(node, Tag):
            if in_skip:
                continue
            for name, value in node.attrs.items():
                if name not in TRANSLATABLE_ATTRIBUTES:
                    continue
                add(
                    value,
                    node=node,
                    location=f"<{node.name}> attribute {name}",
                    attribute_name=name,
                )
        elif _is_text(node) and not in_skip and not in_anchor:
            parent_name = node.parent.name if node.parent is not None else "[document]"
            add(str(node), node=node, location=f"text in <{parent_name}>")

    return units


def finalise_output(output: str) -> str:
    """Apply the single-line guard and strip known placeholder leakage."""

    text = LINE_BREAKS.sub(" ", output)
    return PLACEHOLDER_ARTIFACT.sub("", text)


def write_back(unit: TranslationUnit, output: str) -> bool:
    """Write one output into the tree. Returns False when nothing changed."""

    text = finalise_output(output)
    if text == unit.source_core or not text.strip():
        return False
    value = unit.leading_whitespace + text + unit.trailing_whitespace

    node = unit.node
    if isinstance(node, Tag):
        if unit.attribute_name is None:
            raise HtmlShiftError(
                f"Unit {unit.index} points at an element but names no attribute."
            )
        node[unit.attribute_name] = value
        return True
    if unit.attribute_name is not None:
        raise HtmlShiftError(
            f"Unit {unit.index} names an attribute but points at text."
        )
    node.replace_with(NavigableString(value))
    return True


def reassemble(
    document: Document,
    units: Sequence[TranslationUnit],
    outputs: Sequence[str],
) -> str:
    """Write outputs back into their units and serialize the document."""

    if len(outputs) != len(units):
        raise HtmlShiftError(
            f"Expected {len(units)} translations but received {len(outputs)}."
        )
    for unit, output in zip(units, outputs):
        if write_back(unit, output if output is not None else unit.source_core):
            document.changed = True
    return serialize(document)


def ensure_supported(path: pathlib.Path) -> None:
    """Reject files that are not HTML documents."""

    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise UnsupportedFileTypeError(
            "This file type isn't supported. Please use .html, .htm or .xhtml."
        )


def load_markup(path: pathlib.Path) -> str:
    """Read a UTF-8 document, tolerating a byte order mark."""

    with open(path, "r", encoding="utf-8-sig", newline="") as handle:
        return handle.read()


def save_markup(path: pathlib.Path, markup: str) -> None:
    """Write a document as UTF-8 without a byte order mark."""

    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(markup)

import pytest

from htmlshift.coverage import (
    coverage_decision,
    measure_coverage,
    normalize_language,
    should_skip_markup,
)
from htmlshift.documents import parse_document
from htmlshift.structures import CoverageSample


@pytest.mark.parametrize(
    "raw, expected",
    [("zh-CN", "zh"), ("ZH_tw", "zh"), ("Ja", "ja"), ("", "zh"), (None, "zh"), ("pt", "pt")],
)
def test_normalize_language(raw, expected):
    assert normalize_language(raw) == expected


def test_fully_translated_document_is_skipped():
    skip, coverage = should_skip_markup("<p>你好世界</p>", "zh")
    assert skip is True
    assert coverage == pytest.approx(1.0)


def test_mixed_document_is_translated():
    skip, coverage = should_skip_markup("<p>Hello 世界</p>", "zh")
    assert skip is False
    assert coverage == pytest.approx(2 / 7)


def test_threshold_is_inclusive():
    skip, coverage = should_skip_markup("<p>中文中文中文中文中a</p>", "zh")
    assert coverage == pytest.approx(0.9)
    assert skip is True


def test_document_without_letters_is_not_skipped():
    assert should_skip_markup("<p> 123 !! </p>", "zh") == (False, 0.0)
    assert should_skip_markup("", "zh") == (False, 0.0)


def test_code_and_link_text_do_not_count():
    markup = "<p>中文内容</p><a href='#'>English link text</a><script>var x = 1;</script>"
    skip, coverage = should_skip_markup(markup, "zh")
    assert skip is True
    assert coverage == pytest.approx(1.0)


def test_character_references_are_counted_as_letters():
    sample = measure_coverage(parse_document("<p>&#20013;&#25991;</p>"), "zh")
    assert sample.target_letters == 2
    assert sample.total_letters == 2


def test_latin_targets_use_their_own_script():
    skip, _ = should_skip_markup("<p>Ceci est déjà traduit</p>", "fr")
    assert skip is True
    skip, coverage = should_skip_markup("<p>这是中文</p>", "en")
    assert (skip, coverage) == (False, 0.0)


def test_unknown_language_never_skips():
    assert should_skip_markup("<p>Olá mundo</p>", "pt") == (False, 0.0)


def test_coverage_decision_on_empty_sample():
    assert coverage_decision(CoverageSample()) == (False, 0.0)

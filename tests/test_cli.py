import pathlib

import pytest

from htmlshift import cli


def test_sanitise_language_for_filename():
    assert cli.sanitise_language_for_filename("zh-CN") == "zh-CN"
    assert cli.sanitise_language_for_filename(" Simplified Chinese ") == "Simplified-Chinese"
    assert cli.sanitise_language_for_filename("中文") == "translated"


def test_derive_output_path(tmp_path):
    source = tmp_path / "docs" / "page.html"
    assert cli.derive_output_path(source, "zh") == tmp_path / "docs" / "page_zh.html"
    assert cli.derive_output_path(source, "ja", tmp_path / "out") == tmp_path / "out" / "page_ja.html"


def test_check_reports_coverage_without_credentials(isolated_env, capsys):
    translated = isolated_env / "done.html"
    translated.write_text("<p>已经翻译好了</p>", encoding="utf-8")
    fresh = isolated_env / "fresh.html"
    fresh.write_text("<p>Not yet</p>", encoding="utf-8")

    exit_code = cli.main(["--check", str(translated), str(fresh)])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "done.html: 100.0% zh -> skip" in out
    assert "fresh.html: 0.0% zh -> translate" in out


def test_echo_provider_translates_without_network(isolated_env, capsys):
    source = isolated_env / "page.html"
    source.write_text("<p>Hello <b>world</b></p>", encoding="utf-8")

    exit_code = cli.main([str(source), "-p", "echo", "-t", "ja"])

    output = isolated_env / "page_ja.html"
    assert exit_code == 0
    assert output.read_text(encoding="utf-8") == "<p>Hello <b>world</b></p>"
    assert "translated" in capsys.readouterr().out


def test_output_dir_is_created(isolated_env):
    source = isolated_env / "page.html"
    source.write_text("<p>Hello</p>", encoding="utf-8")

    exit_code = cli.main([str(source), "-p", "echo", "--output-dir", "out/nested"])

    assert exit_code == 0
    assert (isolated_env / "out" / "nested" / "page_zh.html").exists()


def test_skipped_document_writes_nothing(isolated_env, capsys):
    source = isolated_env / "page.html"
    source.write_text("<p>已经翻译好了</p>", encoding="utf-8")

    exit_code = cli.main([str(source), "-p", "echo"])

    assert exit_code == 0
    assert not (isolated_env / "page_zh.html").exists()
    assert "skipped" in capsys.readouterr().out


def test_existing_output_is_not_overwritten_without_force(isolated_env, capsys):
    source = isolated_env / "page.html"
    source.write_text("<p>Hello</p>", encoding="utf-8")
    existing = isolated_env / "page_zh.html"
    existing.write_text("keep", encoding="utf-8")

    assert cli.main([str(source), "-p", "echo"]) == 1
    assert existing.read_text(encoding="utf-8") == "keep"
    assert "already exists" in capsys.readouterr().out

    assert cli.main([str(source), "-p", "echo", "-f"]) == 0
    assert existing.read_text(encoding="utf-8") == "<p>Hello</p>"


def test_unsupported_files_are_rejected(isolated_env, capsys):
    source = isolated_env / "notes.txt"
    source.write_text("Hello", encoding="utf-8")

    assert cli.main([str(source), "-p", "echo"]) == 1
    assert "isn't supported" in capsys.readouterr().out


def test_single_output_needs_single_input(isolated_env, capsys):
    for name in ("a.html", "b.html"):
        (isolated_env / name).write_text("<p>x</p>", encoding="utf-8")

    exit_code = cli.main(["a.html", "b.html", "-p", "echo", "-o", "out.html"])

    assert exit_code == 1
    assert "single input" in capsys.readouterr().out


def test_missing_credentials_fail_before_any_request(isolated_env, capsys):
    source = isolated_env / "page.html"
    source.write_text("<p>Hello</p>", encoding="utf-8")

    assert cli.main([str(source)]) == 1
    assert "LLM_API_KEY" in capsys.readouterr().out
    assert not (isolated_env / "page_zh.html").exists()


def test_jobs_must_be_positive(isolated_env):
    with pytest.raises(SystemExit) as info:
        cli.main(["page.html", "-j", "0"])
    assert info.value.code == 2


def test_missing_input_is_reported(isolated_env, capsys):
    assert cli.main([str(pathlib.Path("absent.html")), "-p", "echo"]) == 1
    assert "not found" in capsys.readouterr().out

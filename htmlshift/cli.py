"""Command line interface for the htmlshift translator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import re
import sys
from typing import Iterable, List, Optional, Sequence, Tuple

from .configuration import TranslatorConfig, get_settings, validate_provider_settings
from .documents import ensure_supported, load_markup
from .errors import (
    HtmlShiftError,
    OverwriteRefusedError,
    TranslationProviderConfigurationError,
    UnsupportedFileTypeError,
)
from .translator import (
    DocumentStatus,
    TranslationRunner,
    TranslationSummary,
    should_skip_document,
    validate_paths,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="htmlshift",
        description=(
            "Translate the text of HTML documents with an LLM endpoint while "
            "leaving the markup untouched."
        ),
    )
    parser.add_argument(
        "files",
        nargs="+",
        help="Paths to the .html, .htm or .xhtml files to translate.",
    )
    parser.add_argument(
        "-t",
        "--target-language",
        help="Destination language code (default: TARGET_LANG from configuration).",
    )
    parser.add_argument(
        "-s",
        "--source-language",
        help="Optional source language hint substituted into custom prompts.",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path (single input only). Defaults to appending the language code.",
    )
    parser.add_argument(
        "--output-dir",
        help="Directory for translated files; names follow the default pattern.",
    )
    parser.add_argument(
        "-p",
        "--provider",
        help="Endpoint dialect or client: openai, generic or echo (default: LLM_DIALECT).",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Model identifier sent to the endpoint.",
    )
    parser.add_argument(
        "-u",
        "--api-url",
        help="Endpoint URL, e.g. a self-hosted /v1/chat/completions address.",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        help="Documents translated at the same time (default: CHUNK_CONCURRENCY).",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting output files that already exist.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report target-language coverage and whether each file would be skipped.",
    )
    parser.add_argument(
        "--no-skip",
        action="store_true",
        help="Translate documents even when they already look translated.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    return parser


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language descriptor."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned or "translated"


def derive_output_path(
    input_path: pathlib.Path,
    language: str,
    output_dir: pathlib.Path | None = None,
) -> pathlib.Path:
    addition = sanitise_language_for_filename(language)
    candidate = f"{input_path.stem}_{addition}{input_path.suffix}"
    return (output_dir or input_path.parent) / candidate


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def resolve_config(
    *,
    target_language: str | None,
    source_language: str | None,
    model: str | None,
    api_url: str | None,
    provider: str | None,
    require_credentials: bool,
) -> TranslatorConfig:
    """Layer command line overrides on top of the discovered configuration."""

    settings = get_settings(require_credentials=False)
    dialect = None
    if provider and provider.strip().lower() not in {"echo", "noop", "mock"}:
        dialect = provider
    settings = settings.with_overrides(
        TARGET_LANG=target_language,
        SOURCE_LANG=source_language,
        LLM_MODEL=model,
        LLM_API_URL=api_url,
        LLM_DIALECT=dialect,
    )
    if require_credentials:
        validate_provider_settings(settings)
    return settings


def plan_jobs(
    files: Sequence[str],
    *,
    output_file: str | None,
    output_dir: str | None,
    language: str,
    force_overwrite: bool,
) -> List[Tuple[pathlib.Path, pathlib.Path]]:
    """Resolve and validate (input, output) pairs for every requested file."""

    if output_file and len(files) > 1:
        raise HtmlShiftError("--output can only be used with a single input file.")

    directory = pathlib.Path(output_dir).expanduser().resolve() if output_dir else None
    jobs: List[Tuple[pathlib.Path, pathlib.Path]] = []
    for name in files:
        input_path = pathlib.Path(name).expanduser().resolve()
        ensure_supported(input_path)
        output_path = (
            pathlib.Path(output_file).expanduser().resolve()
            if output_file
            else derive_output_path(input_path, language, directory)
        )
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        jobs.append((input_path, output_path))
    return jobs


def run_check(files: Sequence[str], settings: TranslatorConfig) -> int:
    """Print the coverage decision for each file without translating anything."""

    exit_code = EXIT_OK
    for name in files:
        path = pathlib.Path(name).expanduser()
        try:
            markup = load_markup(path)
        except (OSError, UnicodeError) as exc:
            print(f"{path}: could not be read ({exc})")
            exit_code = EXIT_FAILED
            continue
        skip, coverage = should_skip_document(markup, settings)
        verdict = "skip" if skip else "translate"
        print(f"{path}: {coverage:.1%} {settings.TARGET_LANG} -> {verdict}")
    return exit_code


def execute_translation(
    *,
    files: Sequence[str],
    output_file: str | None,
    output_dir: str | None,
    target_language: str | None,
    source_language: str | None,
    provider: str | None,
    model: str | None,
    api_url: str | None,
    jobs: int | None,
    force_overwrite: bool,
    skip_translated: bool,
    provider_debug: bool,
) -> tuple[int, List[TranslationSummary], str | None]:
    """Execute a translation run and return the exit code, summaries, and message."""

    try:
        settings = resolve_config(
            target_language=target_language,
            source_language=source_language,
            model=model,
            api_url=api_url,
            provider=provider,
            require_credentials=(provider or "").strip().lower() not in {"echo", "noop", "mock"},
        )
        planned = plan_jobs(
            files,
            output_file=output_file,
            output_dir=output_dir,
            language=settings.TARGET_LANG,
            force_overwrite=force_overwrite,
        )
    except FileNotFoundError as exc:
        return EXIT_FAILED, [], str(exc)
    except (UnsupportedFileTypeError, OverwriteRefusedError) as exc:
        return EXIT_FAILED, [], str(exc)
    except TranslationProviderConfigurationError as exc:
        return EXIT_FAILED, [], str(exc)
    except HtmlShiftError as exc:
        return EXIT_FAILED, [], str(exc)

    runner = TranslationRunner(
        jobs=planned,
        config=settings,
        provider_name=provider,
        skip_translated=skip_translated,
        document_limit=jobs,
        provider_debug=provider_debug or settings.HTMLSHIFT_PROVIDER_DEBUG,
    )

    try:
        summaries = asyncio.run(runner.run())
    except TranslationProviderConfigurationError as exc:
        return EXIT_FAILED, [], str(exc)
    except KeyboardInterrupt:
        return EXIT_ABORTED, [], "Translation interrupted by user."

    if any(summary.status is DocumentStatus.CANCELLED for summary in summaries):
        return EXIT_ABORTED, summaries, "Translation cancelled."
    if any(summary.status is DocumentStatus.FAILED for summary in summaries):
        return EXIT_FAILED, summaries, "Some documents could not be translated."
    return EXIT_OK, summaries, None


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report for one processed file."""

    print(f"\n{summary.input_path}: {summary.status.value}")
    if summary.status is DocumentStatus.TRANSLATED:
        print(f"  Output file:     {summary.output_path}")
        print(
            "  Text units:      "
            f"{summary.translated_units} translated / {summary.total_units} total "
            f"({summary.fallback_units} kept as source)"
        )
    print(f"  Coverage:        {summary.coverage:.1%}")
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.error_messages:
        print("  Notes:")
        for message in summary.error_messages:
            print(f"    - {message}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)

    if args.jobs is not None and args.jobs < 1:
        parser.error("-j/--jobs must be at least 1")

    if args.check:
        try:
            settings = resolve_config(
                target_language=args.target_language,
                source_language=args.source_language,
                model=None,
                api_url=None,
                provider=None,
                require_credentials=False,
            )
        except TranslationProviderConfigurationError as exc:
            print(exc)
            return EXIT_FAILED
        return run_check(args.files, settings)

    exit_code, summaries, message = execute_translation(
        files=args.files,
        output_file=args.output,
        output_dir=args.output_dir,
        target_language=args.target_language,
        source_language=args.source_language,
        provider=args.provider,
        model=args.model,
        api_url=args.api_url,
        jobs=args.jobs,
        force_overwrite=args.force,
        skip_translated=not args.no_skip,
        provider_debug=args.debug_provider,
    )

    for summary in summaries:
        print_summary(summary)
    if message:
        print(message)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

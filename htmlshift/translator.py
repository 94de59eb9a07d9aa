"""High-level orchestration for markup translation."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Coroutine, Dict, List, Optional, Sequence, Tuple, TypeVar

from .configuration import TranslatorConfig, render_system_prompt
from .coverage import should_skip_markup
from .documents import (
    extract_units,
    load_markup,
    parse_document,
    reassemble,
    save_markup,
)
from .errors import (
    ErrorCategory,
    ErrorRecord,
    HtmlShiftError,
    OverwriteRefusedError,
    TranslationAborted,
    TranslationProviderConfigurationError,
    TranslationProviderError,
    TransientProviderError,
)
from .providers import TranslationClient, build_client
from .segmenter import (
    SINGLE_TAG,
    join_batch,
    plan_batches,
    split_batch_response,
    split_sub_batches,
)
from .structures import Batch
from .validation import is_hallucination

logger = logging.getLogger(__name__)

SINGLE_RETRY_LIMIT = 2
SINGLE_RETRY_DELAY = 0.2
SUB_BATCH_DISPATCH_DELAY = 0.05

BATCH_PROMPT = (
    "Translate the following text into {target}. Keep the same number of lines "
    "and preserve punctuation and symbols. Do not insert newlines."
)
SINGLE_PROMPT = (
    "Translate this line into {target}. Keep punctuation and symbols and do not "
    "insert newlines."
)

T = TypeVar("T")


@dataclass
class PipelineStats:
    """Where each unit of a run got its final text from."""

    total_units: int = 0
    batch_units: int = 0
    sub_batch_units: int = 0
    single_units: int = 0
    fallback_units: int = 0

    @property
    def translated_units(self) -> int:
        return self.batch_units + self.sub_batch_units + self.single_units


class DegradationPipeline:
    """Resolves every unit through batch, sub-batch and single-unit requests.

    A primary batch of ten lines is accepted or rejected as a whole. A
    rejected full batch is retried as sub-batches of 3, 3 and 4 lines, each
    again all-or-nothing. Whatever is still unresolved, including short
    batches, is translated one unit at a time; a unit that never yields a
    plausible translation keeps its source text. Results land in a slot list
    addressed by unit index, so completion order never affects output order.
    """

    def __init__(
        self,
        client: TranslationClient,
        config: TranslatorConfig,
        *,
        single_retry_limit: int = SINGLE_RETRY_LIMIT,
        retry_delay: float = SINGLE_RETRY_DELAY,
        dispatch_delay: float = SUB_BATCH_DISPATCH_DELAY,
    ) -> None:
        self.client = client
        self.single_retry_limit = max(0, single_retry_limit)
        self.retry_delay = retry_delay
        self.dispatch_delay = dispatch_delay
        self.batch_prompt = render_system_prompt(
            config, BATCH_PROMPT.format(target=config.TARGET_LANG)
        )
        self.single_prompt = render_system_prompt(
            config, SINGLE_PROMPT.format(target=config.TARGET_LANG)
        )

    async def resolve(
        self,
        sources: Sequence[str],
        *,
        stats: Optional[PipelineStats] = None,
    ) -> List[str]:
        """Return one output per source, in source order."""

        stats = stats if stats is not None else PipelineStats()
        stats.total_units += len(sources)
        slots: List[Optional[str]] = [None] * len(sources)

        await asyncio.gather(
            *(
                self._resolve_batch(batch, sources, slots, stats)
                for batch in plan_batches(len(sources))
            )
        )

        return [
            slot if slot is not None else sources[index]
            for index, slot in enumerate(slots)
        ]

    async def _resolve_batch(
        self,
        batch: Batch,
        sources: Sequence[str],
        slots: List[Optional[str]],
        stats: PipelineStats,
    ) -> None:
        outputs = await self._try_batch(batch, sources)
        if outputs is not None:
            slots[batch.start : batch.stop] = outputs
            stats.batch_units += batch.length
            return

        sub_batches = split_sub_batches(batch)
        if not sub_batches:
            await self._resolve_singles(batch, sources, slots, stats)
            return

        await asyncio.gather(
            *(
                self._resolve_sub_batch(sub_batch, position, sources, slots, stats)
                for position, sub_batch in enumerate(sub_batches)
            )
        )

    async def _resolve_sub_batch(
        self,
        batch: Batch,
        position: int,
        sources: Sequence[str],
        slots: List[Optional[str]],
        stats: PipelineStats,
    ) -> None:
        if position and self.dispatch_delay > 0:
            await asyncio.sleep(position * self.dispatch_delay)

        outputs = await self._try_batch(batch, sources)
        if outputs is not None:
            slots[batch.start : batch.stop] = outputs
            stats.sub_batch_units += batch.length
            return
        await self._resolve_singles(batch, sources, slots, stats)

    async def _resolve_singles(
        self,
        batch: Batch,
        sources: Sequence[str],
        slots: List[Optional[str]],
        stats: PipelineStats,
    ) -> None:
        for index in range(batch.start, batch.stop):
            slots[index] = await self._translate_single(sources[index], index, stats)

    async def _try_batch(
        self,
        batch: Batch,
        sources: Sequence[str],
    ) -> Optional[List[str]]:
        """Translate a batch; None means the whole batch was rejected."""

        lines = list(sources[batch.start : batch.stop])
        try:
            raw = await self.client.complete(
                self.batch_prompt,
                join_batch(lines),
                tag=batch.tag,
                offset=batch.start,
            )
        except TranslationProviderError as exc:
            logger.warning(
                "[%s] off=%d request failed, degrading: %s", batch.tag, batch.start, exc
            )
            return None

        outputs = split_batch_response(raw)
        if len(outputs) != len(lines):
            logger.info(
                "[%s] off=%d expected %d lines but got %d, degrading",
                batch.tag,
                batch.start,
                len(lines),
                len(outputs),
            )
            return None

        for position, (output, source) in enumerate(zip(outputs, lines)):
            if is_hallucination(output, source):
                logger.info(
                    "[%s] off=%d line %d rejected, degrading",
                    batch.tag,
                    batch.start,
                    position,
                )
                return None
        return outputs

    async def _translate_single(
        self,
        text: str,
        index: int,
        stats: PipelineStats,
    ) -> str:
        failures = 0
        while True:
            reply: Optional[str]
            try:
                reply = await self.client.complete(
                    self.single_prompt, text, tag=SINGLE_TAG, offset=index
                )
            except TranslationProviderError as exc:
                logger.warning("[%s] idx=%d request failed: %s", SINGLE_TAG, index, exc)
                reply = None

            if reply is not None:
                reply = reply.strip()
                if "\n" in reply or "\r" in reply:
                    reply = None

            if reply and not is_hallucination(reply, text):
                stats.single_units += 1
                return reply

            failures += 1
            if failures > self.single_retry_limit:
                stats.fallback_units += 1
                logger.warning(
                    "[%s] idx=%d no usable reply after %d attempts, keeping source text",
                    SINGLE_TAG,
                    index,
                    failures,
                )
                return text
            logger.warning(
                "[%s] idx=%d empty or rejected reply, retry %d", SINGLE_TAG, index, failures
            )
            await asyncio.sleep(self.retry_delay)


async def run_cancellable(
    work: Coroutine[object, object, T],
    cancel_event: Optional[asyncio.Event],
) -> T:
    """Await work, cancelling it and raising TranslationAborted once the event is set."""

    if cancel_event is None:
        return await work
    if cancel_event.is_set():
        work.close()
        raise TranslationAborted("Translation cancelled before it started.")

    task = asyncio.ensure_future(work)
    stopper = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        stopper.cancel()
        raise

    if task.done():
        stopper.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise TranslationAborted("Translation cancelled before completion.")


class DocumentStatus(Enum):
    TRANSLATED = "translated"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DocumentOutcome:
    """Result of one document within a multi-document run."""

    name: str
    status: DocumentStatus
    markup: Optional[str] = None
    coverage: float = 0.0
    stats: PipelineStats = field(default_factory=PipelineStats)
    error: Optional[ErrorRecord] = None
    elapsed_seconds: float = 0.0


def categorise_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, TransientProviderError):
        return ErrorCategory.NETWORK
    if isinstance(exc, TranslationProviderError):
        return ErrorCategory.TRANSLATION
    if isinstance(exc, TranslationProviderConfigurationError):
        return ErrorCategory.ARGUMENT
    if isinstance(exc, (OSError, UnicodeError)):
        return ErrorCategory.FILE_IO
    if isinstance(exc, HtmlShiftError):
        return ErrorCategory.FORMAT
    return ErrorCategory.OTHER


class HtmlTranslator:
    """Translates the text of markup documents while keeping the markup intact."""

    def __init__(
        self,
        config: TranslatorConfig,
        *,
        client: Optional[TranslationClient] = None,
        provider: Optional[str] = None,
        debug: bool = False,
        single_retry_limit: int = SINGLE_RETRY_LIMIT,
        retry_delay: float = SINGLE_RETRY_DELAY,
        dispatch_delay: float = SUB_BATCH_DISPATCH_DELAY,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self.client = client or build_client(
            config,
            provider=provider,
            debug=debug or config.HTMLSHIFT_PROVIDER_DEBUG,
        )
        self.pipeline = DegradationPipeline(
            self.client,
            config,
            single_retry_limit=single_retry_limit,
            retry_delay=retry_delay,
            dispatch_delay=dispatch_delay,
        )

    async def __aenter__(self) -> "HtmlTranslator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def should_skip_document(self, markup: str) -> Tuple[bool, float]:
        """Return (skip, coverage) for markup against the target language."""

        return should_skip_markup(markup, self.config.TARGET_LANG)

    async def translate(
        self,
        markup: str,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        stats: Optional[PipelineStats] = None,
    ) -> str:
        """Translate markup. Documents without translatable text come back as-is."""

        document = parse_document(markup)
        units = extract_units(document)
        if not units:
            return markup

        sources = [unit.source_core for unit in units]
        outputs = await run_cancellable(
            self.pipeline.resolve(sources, stats=stats), cancel_event
        )
        return reassemble(document, units, outputs)

    async def translate_file(
        self,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Translate a file and write the result; a failed write is only logged."""

        markup = load_markup(input_path)
        translated = await self.translate(markup, cancel_event=cancel_event)
        try:
            save_markup(output_path, translated)
        except OSError as exc:
            logger.warning("Could not write translated document %s: %s", output_path, exc)
        return translated

    async def translate_many(
        self,
        documents: Sequence[Tuple[str, str]],
        *,
        limit: Optional[int] = None,
        skip_translated: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[DocumentOutcome]:
        """Translate (name, markup) pairs, at most ``limit`` documents at a time."""

        gate = asyncio.Semaphore(max(1, limit or self.config.CHUNK_CONCURRENCY))

        async def run_one(name: str, markup: str) -> DocumentOutcome:
            async with gate:
                return await self._translate_one(
                    name,
                    markup,
                    skip_translated=skip_translated,
                    cancel_event=cancel_event,
                )

        outcomes = await asyncio.gather(
            *(run_one(name, markup) for name, markup in documents)
        )
        return list(outcomes)

    async def _translate_one(
        self,
        name: str,
        markup: str,
        *,
        skip_translated: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> DocumentOutcome:
        started = time.monotonic()
        if cancel_event is not None and cancel_event.is_set():
            return DocumentOutcome(name=name, status=DocumentStatus.CANCELLED)

        coverage = 0.0
        if skip_translated:
            skip = False
            try:
                skip, coverage = self.should_skip_document(markup)
            except Exception as exc:
                logger.warning("[%s] coverage check failed, translating anyway: %s", name, exc)
            if skip:
                logger.info(
                    "[Skip] %s coverage %.1f%% already in the target language",
                    name,
                    coverage * 100,
                )
                return DocumentOutcome(
                    name=name,
                    status=DocumentStatus.SKIPPED,
                    coverage=coverage,
                    elapsed_seconds=time.monotonic() - started,
                )

        stats = PipelineStats()
        try:
            translated = await self.translate(markup, cancel_event=cancel_event, stats=stats)
        except TranslationAborted:
            return DocumentOutcome(
                name=name,
                status=DocumentStatus.CANCELLED,
                coverage=coverage,
                stats=stats,
                elapsed_seconds=time.monotonic() - started,
            )
        except Exception as exc:
            logger.exception("[%s] translation failed", name)
            return DocumentOutcome(
                name=name,
                status=DocumentStatus.FAILED,
                coverage=coverage,
                stats=stats,
                error=ErrorRecord(category=categorise_error(exc), message=str(exc)),
                elapsed_seconds=time.monotonic() - started,
            )

        return DocumentOutcome(
            name=name,
            status=DocumentStatus.TRANSLATED,
            markup=translated,
            coverage=coverage,
            stats=stats,
            elapsed_seconds=time.monotonic() - started,
        )


def should_skip_document(markup: str, config: TranslatorConfig) -> Tuple[bool, float]:
    """Return (skip, coverage): skip when the text is already in the target language."""

    return should_skip_markup(markup, config.TARGET_LANG)


async def translate(
    markup: str,
    config: TranslatorConfig,
    cancel_event: Optional[asyncio.Event] = None,
    *,
    client: Optional[TranslationClient] = None,
) -> str:
    """Translate one markup document with a translator scoped to this call."""

    async with HtmlTranslator(config, client=client) as translator:
        return await translator.translate(markup, cancel_event=cancel_event)


@dataclass
class TranslationSummary:
    """Report returned after processing a file."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    status: DocumentStatus
    coverage: float
    total_units: int
    translated_units: int
    fallback_units: int
    elapsed_seconds: float
    error_messages: List[str] = field(default_factory=list)


class TranslationRunner:
    """Coordinates reading, translating and writing a set of files."""

    def __init__(
        self,
        *,
        jobs: Sequence[Tuple[pathlib.Path, pathlib.Path]],
        config: TranslatorConfig,
        provider_name: str | None = None,
        skip_translated: bool = True,
        document_limit: int | None = None,
        provider_debug: bool = False,
        client: Optional[TranslationClient] = None,
    ) -> None:
        self.jobs = list(jobs)
        self.config = config
        self.provider_name = provider_name
        self.skip_translated = skip_translated
        self.document_limit = document_limit
        self.provider_debug = provider_debug
        self.client = client

    async def run(
        self,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[TranslationSummary]:
        summaries: Dict[int, TranslationSummary] = {}
        loaded: List[Tuple[int, str]] = []

        for position, (input_path, output_path) in enumerate(self.jobs):
            try:
                loaded.append((position, load_markup(input_path)))
            except (OSError, UnicodeError) as exc:
                summaries[position] = self._failed_summary(
                    position, f"Could not read {input_path}: {exc}"
                )

        if loaded:
            async with HtmlTranslator(
                self.config,
                client=self.client,
                provider=self.provider_name,
                debug=self.provider_debug,
            ) as translator:
                outcomes = await translator.translate_many(
                    [(str(self.jobs[position][0]), markup) for position, markup in loaded],
                    limit=self.document_limit,
                    skip_translated=self.skip_translated,
                    cancel_event=cancel_event,
                )
            for (position, _), outcome in zip(loaded, outcomes):
                summaries[position] = self._summarise(position, outcome)

        return [summaries[position] for position in range(len(self.jobs))]

    def _summarise(self, position: int, outcome: DocumentOutcome) -> TranslationSummary:
        input_path, output_path = self.jobs[position]
        status = outcome.status
        messages: List[str] = []
        if outcome.error is not None:
            messages.append(outcome.error.message)

        if status is DocumentStatus.TRANSLATED and outcome.markup is not None:
            try:
                save_markup(output_path, outcome.markup)
            except OSError as exc:
                status = DocumentStatus.FAILED
                messages.append(f"Could not write {output_path}: {exc}")

        return TranslationSummary(
            input_path=input_path,
            output_path=output_path,
            status=status,
            coverage=outcome.coverage,
            total_units=outcome.stats.total_units,
            translated_units=outcome.stats.translated_units,
            fallback_units=outcome.stats.fallback_units,
            elapsed_seconds=outcome.elapsed_seconds,
            error_messages=messages,
        )

    def _failed_summary(self, position: int, message: str) -> TranslationSummary:
        input_path, output_path = self.jobs[position]
        return TranslationSummary(
            input_path=input_path,
            output_path=output_path,
            status=DocumentStatus.FAILED,
            coverage=0.0,
            total_units=0,
            translated_units=0,
            fallback_units=0,
            elapsed_seconds=0.0,
            error_messages=[message],
        )


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(
            f"Input file not found: {input_path}. Please provide a readable HTML file."
        )
    if not input_path.is_file():
        raise HtmlShiftError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            f"The output file {output_path} already exists; rename it or use the overwrite flag."
        )

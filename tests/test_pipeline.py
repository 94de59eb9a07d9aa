import pytest

from conftest import ScriptedClient, shout
from htmlshift.errors import TranslationProviderError, TransientProviderError
from htmlshift.translator import DegradationPipeline, PipelineStats


def make_pipeline(client, config, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("dispatch_delay", 0)
    return DegradationPipeline(client, config, **kwargs)


def lines(count, prefix="line"):
    return [f"{prefix} {index}" for index in range(count)]


@pytest.mark.asyncio
async def test_full_batches_resolve_in_one_request(config):
    client = ScriptedClient(lambda call: shout(call.payload))
    stats = PipelineStats()
    sources = lines(10)

    outputs = await make_pipeline(client, config).resolve(sources, stats=stats)

    assert outputs == [source.upper() for source in sources]
    assert client.tags() == ["B10"]
    assert client.calls[0].payload == "\n".join(sources)
    assert stats.batch_units == 10
    assert stats.translated_units == 10


@pytest.mark.asyncio
async def test_line_count_mismatch_degrades_to_three_three_four(config):
    def responder(call):
        if call.tag == "B10":
            return "\n".join(shout(call.payload).split("\n")[:9])
        return shout(call.payload)

    client = ScriptedClient(responder)
    stats = PipelineStats()
    sources = lines(10)

    outputs = await make_pipeline(client, config).resolve(sources, stats=stats)

    assert outputs == [source.upper() for source in sources]
    sub_batches = client.calls_tagged("B334")
    assert sorted(call.offset for call in sub_batches) == [0, 3, 6]
    assert sorted(len(call.payload.split("\n")) for call in sub_batches) == [3, 3, 4]
    assert client.calls_tagged("S1") == []
    assert stats.sub_batch_units == 10


@pytest.mark.asyncio
async def test_one_hallucinated_line_rejects_the_whole_batch(config):
    def responder(call):
        translated = shout(call.payload).split("\n")
        if call.tag == "B10":
            translated[4] = "千岁"
        return "\n".join(translated)

    client = ScriptedClient(responder)
    outputs = await make_pipeline(client, config).resolve(lines(10))

    assert outputs == [source.upper() for source in lines(10)]
    assert client.tags().count("B334") == 3


@pytest.mark.asyncio
async def test_provider_error_degrades_instead_of_failing(config):
    def responder(call):
        if call.tag == "B10":
            return TransientProviderError("still down after retries")
        return shout(call.payload)

    client = ScriptedClient(responder)
    outputs = await make_pipeline(client, config).resolve(lines(10))

    assert outputs == [source.upper() for source in lines(10)]
    assert client.tags().count("B334") == 3


@pytest.mark.asyncio
async def test_failed_sub_batch_falls_back_to_single_units(config):
    def responder(call):
        if call.tag == "B10":
            return "nope"
        if call.tag == "B334" and call.offset == 3:
            return "only one line"
        return shout(call.payload)

    client = ScriptedClient(responder)
    stats = PipelineStats()
    outputs = await make_pipeline(client, config).resolve(lines(10), stats=stats)

    assert outputs == [source.upper() for source in lines(10)]
    assert [call.offset for call in client.calls_tagged("S1")] == [3, 4, 5]
    assert stats.sub_batch_units == 7
    assert stats.single_units == 3


@pytest.mark.asyncio
async def test_short_batch_skips_sub_batches(config):
    def responder(call):
        if call.tag == "B10":
            return ""
        return shout(call.payload)

    client = ScriptedClient(responder)
    outputs = await make_pipeline(client, config).resolve(lines(4))

    assert outputs == [source.upper() for source in lines(4)]
    assert client.tags() == ["B10", "S1", "S1", "S1", "S1"]
    assert [call.offset for call in client.calls_tagged("S1")] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_single_unit_keeps_source_after_three_failed_attempts(config):
    def responder(call):
        if call.tag == "B10":
            return TranslationProviderError("bad request")
        return ""

    client = ScriptedClient(responder)
    stats = PipelineStats()
    outputs = await make_pipeline(client, config).resolve(["Hello world"], stats=stats)

    assert outputs == ["Hello world"]
    assert len(client.calls) == 4
    assert client.tags() == ["B10", "S1", "S1", "S1"]
    assert stats.fallback_units == 1
    assert stats.single_units == 0


@pytest.mark.asyncio
async def test_single_unit_rejects_multi_line_replies(config):
    replies = iter(["HELLO\nWORLD", "  HELLO WORLD  "])

    def responder(call):
        if call.tag == "B10":
            return "x\ny"
        return next(replies)

    client = ScriptedClient(responder)
    outputs = await make_pipeline(client, config).resolve(["hello world"])

    assert outputs == ["HELLO WORLD"]
    assert client.tags() == ["B10", "S1", "S1"]


@pytest.mark.asyncio
async def test_provider_errors_count_as_single_attempts(config):
    attempts = iter(
        [TransientProviderError("timeout"), TransientProviderError("timeout"), "HELLO"]
    )

    def responder(call):
        if call.tag == "B10":
            return "a\nb"
        return next(attempts)

    client = ScriptedClient(responder)
    outputs = await make_pipeline(client, config).resolve(["hello"])

    assert outputs == ["HELLO"]
    assert client.tags().count("S1") == 3


@pytest.mark.asyncio
async def test_outputs_follow_source_order_when_replies_arrive_out_of_order(config):
    client = ScriptedClient(
        lambda call: shout(call.payload),
        delay=lambda call: 0.001 * (30 - call.offset),
    )
    sources = lines(27)

    outputs = await make_pipeline(client, config).resolve(sources)

    assert outputs == [source.upper() for source in sources]
    assert sorted(call.offset for call in client.calls) == [0, 10, 20]
    assert [len(call.payload.split("\n")) for call in sorted(client.calls, key=lambda c: c.offset)] == [10, 10, 7]


@pytest.mark.asyncio
async def test_every_batch_is_dispatched_without_a_pipeline_limit(config):
    client = ScriptedClient(lambda call: shout(call.payload), delay=0.02)

    await make_pipeline(client, config).resolve(lines(50))

    assert client.peak_in_flight == 5


@pytest.mark.asyncio
async def test_custom_system_prompt_is_rendered(make_config):
    config = make_config(SYSTEM_PROMPT="From ${src} to ${dst}, line by line.", TARGET_LANG="ja")
    client = ScriptedClient(lambda call: shout(call.payload))

    await make_pipeline(client, config).resolve(["hello"])

    assert client.calls[0].system_prompt == "From auto to ja, line by line."


@pytest.mark.asyncio
async def test_default_prompts_name_the_target_language(config):
    def responder(call):
        if call.tag == "B10":
            return ""
        return shout(call.payload)

    client = ScriptedClient(responder)
    await make_pipeline(client, config).resolve(["hello"])

    batch_prompt, single_prompt = (call.system_prompt for call in client.calls)
    assert batch_prompt.startswith("Translate the following text into zh.")
    assert "Keep the same number of lines" in batch_prompt
    assert single_prompt.startswith("Translate this line into zh.")


@pytest.mark.asyncio
async def test_empty_input_makes_no_requests(config):
    client = ScriptedClient(lambda call: shout(call.payload))
    assert await make_pipeline(client, config).resolve([]) == []
    assert client.calls == []

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Union

import pytest

from htmlshift.configuration import TranslatorConfig, clear_settings_cache
from htmlshift.providers import TranslationClient

Reply = Union[str, Exception]


@dataclass
class RecordedCall:
    system_prompt: str
    payload: str
    tag: str
    offset: int


class ScriptedClient(TranslationClient):
    """Answers requests through a responder and records every call."""

    def __init__(
        self,
        responder: Callable[[RecordedCall], Reply],
        *,
        delay: Union[float, Callable[[RecordedCall], float]] = 0.0,
    ):
        self.responder = responder
        self.delay = delay
        self.calls: List[RecordedCall] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    async def complete(self, system_prompt, user_payload, *, tag, offset):
        call = RecordedCall(system_prompt, user_payload, tag, offset)
        self.calls.append(call)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.delay(call) if callable(self.delay) else self.delay
            if delay:
                await asyncio.sleep(delay)
            reply = self.responder(call)
        finally:
            self.in_flight -= 1
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def aclose(self):
        self.closed = True

    def tags(self) -> List[str]:
        return [call.tag for call in self.calls]

    def calls_tagged(self, tag: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.tag == tag]


def shout(payload: str) -> str:
    """A stand-in translation that keeps line structure and passes the detector."""

    return "\n".join(line.upper() for line in payload.split("\n"))


@pytest.fixture
def make_config():
    def factory(**overrides) -> TranslatorConfig:
        values = {"LLM_API_KEY": "test-key", "TARGET_LANG": "zh"}
        values.update(overrides)
        return TranslatorConfig(**values)

    return factory


@pytest.fixture
def config(make_config) -> TranslatorConfig:
    return make_config()


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """Point HOME and the working directory at tmp_path and clear config variables."""

    for key in [*TranslatorConfig.model_fields, "OPENAI_API_KEY"]:
        monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return tmp_path

"""Translation endpoint clients."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import httpx
import openai
from tenacity import AsyncRetrying
from tenacity import before_sleep_log
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from .configuration import TranslatorConfig
from .errors import (
    MalformedResponseError,
    TranslationProviderConfigurationError,
    TranslationProviderError,
    TransientProviderError,
)
from .validation import strip_reasoning

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 120.0
HTTP_MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 0.3
BACKOFF_CAP_SECONDS = 4.0

SEND_PREVIEW_CHARS = 300
RECV_PREVIEW_CHARS = 2048

OPENAI_CHAT_SUFFIX = "/chat/completions"


class TranslationClient(ABC):
    """Performs one request/response cycle against a translation endpoint."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_payload: str,
        *,
        tag: str,
        offset: int,
    ) -> str:
        """Return the model's reply to user_payload. ``tag``/``offset`` label logs."""

    async def aclose(self) -> None:
        """Release network resources held by the client."""


class EchoTranslationClient(TranslationClient):
    """A client that returns the payload unchanged (useful for dry runs)."""

    async def complete(
        self,
        system_prompt: str,
        user_payload: str,
        *,
        tag: str,
        offset: int,
    ) -> str:
        return user_payload


def build_request_body(
    config: TranslatorConfig,
    system_prompt: str,
    user_payload: str,
) -> Dict[str, Any]:
    """Build the JSON body for the configured endpoint dialect."""

    body: Dict[str, Any] = {
        "model": config.LLM_MODEL,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_payload},
        ],
        "temperature": config.TEMPERATURE,
        "top_p": config.TOP_P,
        "frequency_penalty": config.FREQUENCY_PENALTY,
        "stream": False,
    }
    token_cap = config.MAX_OUTPUT_TOKENS if config.MAX_OUTPUT_TOKENS > 0 else None

    if config.LLM_DIALECT == "openai":
        body["presence_penalty"] = config.PRESENCE_PENALTY
        if token_cap:
            body["max_tokens"] = token_cap
        return body

    # llama.cpp-style servers read one of these two spellings.
    body["repeat_penalty"] = config.REPETITION_PENALTY
    body["repetition_penalty"] = config.REPETITION_PENALTY
    if token_cap:
        body["max_tokens"] = token_cap
        body["n_predict"] = token_cap
    return body


def extract_content(payload: Any) -> str:
    """Pull the reply text out of a chat, completion or bare-content response."""

    if not isinstance(payload, Mapping):
        raise MalformedResponseError(
            "Translation endpoint response malformed: expected a JSON object."
        )

    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, Mapping) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(first.get("text"), str):
            return first["text"]

    content = payload.get("content")
    if isinstance(content, str):
        return content

    raise MalformedResponseError(
        "Translation endpoint response empty or unrecognised."
    )


def is_transient_status(status_code: int) -> bool:
    """Rate limiting and server errors are worth retrying."""

    return status_code == 429 or status_code >= 500


def openai_base_url(api_url: str) -> str:
    """Turn a full chat-completions URL into the SDK's base URL."""

    trimmed = api_url.strip().rstrip("/")
    if trimmed.endswith(OPENAI_CHAT_SUFFIX):
        trimmed = trimmed[: -len(OPENAI_CHAT_SUFFIX)]
    return trimmed


def _preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class HttpTranslationClient(TranslationClient):
    """Talks to an OpenAI-style or self-hosted endpoint under a shared gate.

    Every call made through one instance competes for the same
    ``HTTP_CONCURRENCY`` slots, however many batches or single units are
    pending. A slot is held only while a request is on the wire; backoff
    sleeps happen outside it.
    """

    def __init__(
        self,
        config: TranslatorConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        max_retries: int = HTTP_MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        debug: bool = False,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.debug = debug

        if config.LLM_DIALECT == "openai" and not config.LLM_API_KEY:
            raise TranslationProviderConfigurationError(
                "OpenAI configuration missing. Set LLM_API_KEY or switch "
                "LLM_DIALECT to 'generic'."
            )

        self._gate = asyncio.Semaphore(config.HTTP_CONCURRENCY)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._openai: Optional[openai.AsyncOpenAI] = None
        if config.LLM_DIALECT == "openai":
            self._openai = self._build_openai_client()

        self.in_flight = 0
        self.peak_in_flight = 0
        self.request_count = 0

    def _build_openai_client(self) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=self.config.LLM_API_KEY,
            base_url=openai_base_url(self.config.LLM_API_URL),
            max_retries=0,
            timeout=self.timeout,
            http_client=self._http,
        )

    async def complete(
        self,
        system_prompt: str,
        user_payload: str,
        *,
        tag: str,
        offset: int,
    ) -> str:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                min=self.backoff_base,
                max=self.backoff_cap,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(
            self._complete_once, system_prompt, user_payload, tag, offset
        )

    async def _complete_once(
        self,
        system_prompt: str,
        user_payload: str,
        tag: str,
        offset: int,
    ) -> str:
        body = build_request_body(self.config, system_prompt, user_payload)
        logger.info(
            "[SEND] %s off=%d\n%s",
            tag,
            offset,
            _preview(system_prompt + "\n" + user_payload, SEND_PREVIEW_CHARS),
        )
        self._log_debug("provider.request.body", body)

        async with self._gate:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            self.request_count += 1
            try:
                payload = await asyncio.wait_for(self._send(body), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("[TIMEOUT] %s off=%d after %.0fs", tag, offset, self.timeout)
                raise TransientProviderError(
                    f"Translation request timed out after {self.timeout:g} seconds."
                ) from exc
            finally:
                self.in_flight -= 1

        self._log_debug("provider.response.raw", payload)
        content = extract_content(payload)
        logger.info(
            "[RECV] %s off=%d bytes=%d\n%s",
            tag,
            offset,
            len(content),
            _preview(content, RECV_PREVIEW_CHARS),
        )
        return strip_reasoning(content)

    async def _send(self, body: Dict[str, Any]) -> Any:
        if self._openai is not None:
            return await self._send_openai(self._openai, body)
        return await self._send_generic(body)

    async def _send_openai(
        self, client: openai.AsyncOpenAI, body: Dict[str, Any]
    ) -> Any:
        try:
            response = await client.chat.completions.create(**body)
        except openai.APIConnectionError as exc:
            raise TransientProviderError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc
        except openai.APIStatusError as exc:
            error_cls = (
                TransientProviderError
                if is_transient_status(exc.status_code)
                else TranslationProviderError
            )
            raise error_cls(
                f"Translation endpoint returned HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except openai.APIError as exc:
            raise MalformedResponseError(
                f"Translation endpoint response could not be read: {exc}"
            ) from exc
        return response.model_dump()

    async def _send_generic(self, body: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.config.LLM_API_KEY:
            headers["Authorization"] = f"Bearer {self.config.LLM_API_KEY}"
        try:
            response = await self._http.post(
                self.config.LLM_API_URL, json=body, headers=headers
            )
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise TransientProviderError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TranslationProviderError(f"Translation request failed: {exc}") from exc

        if response.status_code >= 400:
            error_cls = (
                TransientProviderError
                if is_transient_status(response.status_code)
                else TranslationProviderError
            )
            raise error_cls(
                f"Translation endpoint returned HTTP {response.status_code}: "
                f"{_preview(response.text, 200)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Translation endpoint returned invalid JSON: {exc}"
            ) from exc

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        try:
            if isinstance(payload, (dict, list)):
                message = json.dumps(payload, ensure_ascii=False, indent=2)
            else:
                message = str(payload)
        except (TypeError, ValueError):
            message = repr(payload)
        print(f"[htmlshift][provider-debug] {label}:\n{message}", file=sys.stderr)


def build_client(
    config: TranslatorConfig,
    *,
    provider: str | None = None,
    http_client: Optional[httpx.AsyncClient] = None,
    debug: bool = False,
) -> TranslationClient:
    """Factory to create clients by name; defaults to the configured dialect."""

    normalized = (provider or config.LLM_DIALECT).strip().lower()
    if normalized in {"echo", "noop", "mock"}:
        return EchoTranslationClient()
    if normalized in {"openai", "gpt", "default"}:
        normalized = "openai"
    elif normalized in {"generic", "self-hosted", "self_hosted", "llamacpp", "local"}:
        normalized = "generic"
    else:
        raise TranslationProviderConfigurationError(
            f"Unknown translation provider '{provider}'."
        )
    if normalized != config.LLM_DIALECT:
        config = config.with_overrides(LLM_DIALECT=normalized)
    return HttpTranslationClient(config, http_client=http_client, debug=debug)

"""Layered configuration loader for htmlshift."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import TranslationProviderConfigurationError

APP_NAME = "htmlshift"

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"

# Environment names accepted in place of a schema field when it is unset.
ENV_ALIASES = {"OPENAI_API_KEY": "LLM_API_KEY"}


def _clamp(value: float, low: float, high: float | None = None) -> float:
    if value < low:
        return low
    if high is not None and value > high:
        return high
    return value


class TranslatorConfig(BaseModel):
    """Schema describing all supported configuration options.

    Field names double as YAML keys and environment variable names. Values
    outside their documented range are clamped rather than rejected.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    SOURCE_LANG: str = Field(default="auto")
    TARGET_LANG: str = Field(default="zh")
    LLM_DIALECT: Literal["openai", "generic"] = Field(
        default="openai",
        description="Request/response shape spoken by the endpoint.",
    )
    LLM_API_URL: str = Field(default=DEFAULT_API_URL)
    LLM_API_KEY: Optional[str] = Field(default=None, repr=False)
    LLM_MODEL: str = Field(default="gpt-4o-mini")
    SYSTEM_PROMPT: str = Field(
        default="",
        description="Custom system prompt; ${src} and ${dst} are substituted.",
    )
    TEMPERATURE: float = Field(default=0.7)
    TOP_P: float = Field(default=1.0)
    FREQUENCY_PENALTY: float = Field(default=0.0)
    PRESENCE_PENALTY: float = Field(default=0.0)
    REPETITION_PENALTY: float = Field(default=1.0)
    MAX_OUTPUT_TOKENS: int = Field(default=0, description="0 leaves the cap to the server.")
    HTTP_CONCURRENCY: int = Field(default=3)
    CHUNK_CONCURRENCY: int = Field(default=3)
    HTMLSHIFT_PROVIDER_DEBUG: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def _normalise_dialect(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("LLM_DIALECT")
            if isinstance(raw_value, str):
                normalized = raw_value.strip().lower().replace("-", "_")
                synonyms = {
                    "open_ai": "openai",
                    "openai_chat": "openai",
                    "self_hosted": "generic",
                    "selfhosted": "generic",
                    "llamacpp": "generic",
                    "llama_cpp": "generic",
                    "completion": "generic",
                    "custom": "generic",
                }
                normalized = synonyms.get(normalized, normalized)
                if normalized not in {"openai", "generic"}:
                    normalized = "openai"
                data = {**data, "LLM_DIALECT": normalized}
        return data

    @field_validator("TEMPERATURE")
    @classmethod
    def _clamp_temperature(cls, value: float) -> float:
        return _clamp(value, 0.0, 2.0)

    @field_validator("TOP_P")
    @classmethod
    def _clamp_top_p(cls, value: float) -> float:
        return _clamp(value, 0.0, 1.0)

    @field_validator("FREQUENCY_PENALTY", "PRESENCE_PENALTY")
    @classmethod
    def _clamp_penalty(cls, value: float) -> float:
        return _clamp(value, -2.0, 2.0)

    @field_validator("REPETITION_PENALTY")
    @classmethod
    def _clamp_repetition(cls, value: float) -> float:
        return _clamp(value, 0.0)

    @field_validator("MAX_OUTPUT_TOKENS")
    @classmethod
    def _clamp_tokens(cls, value: int) -> int:
        return max(0, value)

    @field_validator("HTTP_CONCURRENCY", "CHUNK_CONCURRENCY")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, value)

    def with_overrides(self, **overrides: Any) -> "TranslatorConfig":
        """Return a validated copy with the non-None overrides applied."""

        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        return TranslatorConfig.model_validate({**self.model_dump(), **updates})


def render_system_prompt(config: TranslatorConfig, fallback: str) -> str:
    """Fill ${src}/${dst} in the configured prompt, or return the fallback."""

    template = (config.SYSTEM_PROMPT or "").strip()
    if not template:
        return fallback
    return template.replace("${src}", config.SOURCE_LANG or "auto").replace(
        "${dst}", config.TARGET_LANG or "zh"
    )


def discover_config_files(app_dir: Path) -> list[Path]:
    """Return YAML configuration files in increasing order of precedence."""

    candidates = [
        Path.home() / ".config" / APP_NAME / "config.yaml",
        app_dir / "config.yaml",
    ]
    seen: set[Path] = set()
    found: list[Path] = []
    for path in candidates:
        resolved = path.expanduser().resolve()
        if resolved in seen or not resolved.is_file():
            continue
        seen.add(resolved)
        found.append(resolved)
    return found


def _load_discovered_yaml(app_dir: Path) -> Dict[str, Any]:
    """Merge YAML configuration files, later files overriding earlier ones."""

    result: Dict[str, Any] = {}
    for path in discover_config_files(app_dir):
        try:
            with open(path, "r", encoding="utf-8") as handle:
                parsed = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise TranslationProviderConfigurationError(
                f"Configuration file {path} could not be read: {exc}"
            ) from exc
        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise TranslationProviderConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        result.update(parsed)
    return result


def _merge_env_sources(target: Dict[str, Any], *, app_dir: Path) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(TranslatorConfig.model_fields.keys())

    def merge_values(values: Mapping[str, Optional[str]]) -> None:
        for key, value in sorted(values.items()):
            if value is None:
                continue
            if key in allowed:
                target[key] = value
            elif key in ENV_ALIASES and not target.get(ENV_ALIASES[key]):
                target[ENV_ALIASES[key]] = value

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path))

    merge_values({k: v for k, v in os.environ.items() if isinstance(v, str)})


def validate_provider_settings(settings: TranslatorConfig) -> None:
    errors: list[str] = []

    if not settings.LLM_API_URL.strip():
        errors.append("LLM_API_URL must point at an OpenAI or self-hosted endpoint.")
    if settings.LLM_DIALECT == "openai" and not settings.LLM_API_KEY:
        errors.append(
            "LLM_API_KEY (or OPENAI_API_KEY) is required when LLM_DIALECT is 'openai'."
        )

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise TranslationProviderConfigurationError(
            "Configuration validation errors detected:\n" + bullet_list
        )


def _format_validation_errors(entries: Sequence[Mapping[str, Any]]) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("loc") or ()
        location = ".".join(str(part) for part in path if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


@lru_cache(maxsize=4)
def _load_settings(app_dir: Path) -> TranslatorConfig:
    """Load configuration layers once and cache the immutable model."""

    combined = _load_discovered_yaml(app_dir)
    _merge_env_sources(combined, app_dir=app_dir)
    try:
        return TranslatorConfig.model_validate(combined)
    except ValidationError as exc:
        raise TranslationProviderConfigurationError(
            _format_validation_errors(exc.errors())
        ) from exc


def get_settings(
    app_dir: Path | None = None,
    *,
    require_credentials: bool = True,
) -> TranslatorConfig:
    """Return the validated configuration model."""

    settings = _load_settings((app_dir or Path.cwd()).resolve())
    if require_credentials:
        validate_provider_settings(settings)
    return settings


def clear_settings_cache() -> None:
    """Forget cached settings so the next call re-reads every source."""

    _load_settings.cache_clear()

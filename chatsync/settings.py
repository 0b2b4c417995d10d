"""Typed application settings with Pydantic validation."""

from __future__ import annotations

import json
import os
from pathlib import Path

import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_BASE_URL = "https://api.letta.com"
DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_MESSAGES = 200
MAX_PAGE_SIZE = 1000
DEFAULT_WATCHDOG_SECONDS = 30.0
DEFAULT_RENDER_INTERVAL = 1.0 / 60.0

API_KEY_ENV = "CHATSYNC_API_KEY"
BASE_URL_ENV = "CHATSYNC_BASE_URL"


def _default_state_path() -> str:
    return str(Path.home() / ".chatsync" / "state.sqlite")


def _coerce_positive_int(
    value: int | str | None, *, default: int, maximum: int | None = None
) -> int:
    """Return *value* as a positive integer, falling back to *default*."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid integer setting")
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return default
        numeric = int(raw)
    else:
        numeric = int(value)
    if numeric <= 0:
        return default
    if maximum is not None and numeric > maximum:
        return maximum
    return numeric


class ServiceSettings(BaseModel):
    """Settings for connecting to the remote agent service."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    base_url: str = Field(DEFAULT_BASE_URL, alias="api_base")
    api_key: str | None = None
    project: str | None = Field(None, alias="project_slug")
    agent_id: str | None = None
    timeout_seconds: float = Field(60.0, gt=0)

    @field_validator("base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: str | None) -> str:
        """Strip whitespace and trailing slashes from the base URL."""
        if value is None:
            return DEFAULT_BASE_URL
        text = str(value).strip().rstrip("/")
        return text or DEFAULT_BASE_URL

    @field_validator("api_key", "project", "agent_id", mode="before")
    @classmethod
    def _empty_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class HistorySettings(BaseModel):
    """Settings controlling the conversation history cache."""

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    page_size: int = DEFAULT_PAGE_SIZE
    max_messages: int = DEFAULT_MAX_MESSAGES
    state_path: str = Field(default_factory=_default_state_path)

    @field_validator("page_size", mode="before")
    @classmethod
    def _normalize_page_size(cls, value: int | str | None) -> int:
        """Clamp the page size into ``1..MAX_PAGE_SIZE``."""
        return _coerce_positive_int(
            value, default=DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE
        )

    @field_validator("max_messages", mode="before")
    @classmethod
    def _normalize_max_messages(cls, value: int | str | None) -> int:
        return _coerce_positive_int(value, default=DEFAULT_MAX_MESSAGES)

    @field_validator("state_path", mode="before")
    @classmethod
    def _normalize_state_path(cls, value: str | Path | None) -> str:
        if value is None:
            return _default_state_path()
        text = str(value).strip()
        return str(Path(text).expanduser()) if text else _default_state_path()


class StreamSettings(BaseModel):
    """Settings for streaming requests and their retry policy."""

    model_config = ConfigDict(validate_assignment=True)

    max_retries: int = Field(3, ge=0, le=10)
    base_delay: float = Field(1.0, ge=0.0)
    max_delay: float = Field(8.0, ge=0.0)
    jitter: float = Field(0.0, ge=0.0, le=1.0)
    watchdog_seconds: float = Field(DEFAULT_WATCHDOG_SECONDS, gt=0.0)
    render_interval: float = Field(DEFAULT_RENDER_INTERVAL, ge=0.0)

    @field_validator("max_delay")
    @classmethod
    def _max_delay_not_below_base(cls, value: float, info) -> float:
        base = info.data.get("base_delay")
        if base is not None and value < base:
            return base
        return value


class AppSettings(BaseModel):
    """Aggregate settings for the application."""

    model_config = ConfigDict(validate_assignment=True)

    service: ServiceSettings = Field(default_factory=ServiceSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)

    def to_dict(self) -> dict:
        """Return settings as a plain dictionary."""
        return self.model_dump()

    def with_environment(self) -> AppSettings:
        """Return a copy with ``CHATSYNC_*`` environment overrides applied."""
        updated = self.model_copy(deep=True)
        api_key = os.environ.get(API_KEY_ENV)
        if api_key:
            updated.service.api_key = api_key
        base_url = os.environ.get(BASE_URL_ENV)
        if base_url:
            updated.service.base_url = base_url
        return updated


def load_app_settings(path: str | Path) -> AppSettings:
    """Load :class:`AppSettings` from *path* with validation.

    Format is detected by file extension: ``.toml`` uses :mod:`tomllib`,
    everything else is treated as JSON.  Any validation errors are wrapped into
    :class:`ValueError` with a human-friendly message.
    """
    p = Path(path)
    with p.open("rb") as fh:
        data = tomllib.load(fh) if p.suffix.lower() == ".toml" else json.load(fh)
    try:
        return AppSettings.model_validate(data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def save_app_settings(settings: AppSettings, path: str | Path) -> None:
    """Persist *settings* as JSON to *path*."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(
        json.dumps(settings.model_dump(by_alias=False), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


__all__ = [
    "AppSettings",
    "HistorySettings",
    "ServiceSettings",
    "StreamSettings",
    "load_app_settings",
    "save_app_settings",
]

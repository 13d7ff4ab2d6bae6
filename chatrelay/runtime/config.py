from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .llm.errors import ModelConfigError
from .llm.types import CredentialRef, ProviderKind
from .tools.runtime import ToolApprovalMode

CONFIG_DIRNAME = ".chatrelay"
CONFIG_FILENAME = "config.json"

DEFAULT_MAX_ITERATIONS = 10
MAX_ITERATIONS_LIMIT = 256

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _clean_non_empty_str(value: str, *, field_name: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} must be a non-empty string.")
    return cleaned


class ModelProfile(BaseModel):
    profile_id: str
    provider_kind: ProviderKind = ProviderKind.ANTHROPIC
    model_name: str
    base_url: str | None = None
    credential_ref: CredentialRef
    system_prompt: str | None = None
    max_tokens: int = Field(default=4096, ge=1, le=200_000)
    timeout_s: float = Field(default=120.0, gt=0, le=3600)

    @field_validator("profile_id", "model_name")
    @classmethod
    def _validate_required_strs(cls, v: str, info) -> str:
        return _clean_non_empty_str(v, field_name=str(info.field_name))

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None


def _default_profiles() -> list[ModelProfile]:
    return [
        ModelProfile(
            profile_id="anthropic",
            provider_kind=ProviderKind.ANTHROPIC,
            model_name="claude-sonnet-4-5",
            credential_ref=CredentialRef(kind="env", identifier="ANTHROPIC_API_KEY"),
        ),
        ModelProfile(
            profile_id="openai",
            provider_kind=ProviderKind.OPENAI_COMPATIBLE,
            model_name="gpt-4o",
            credential_ref=CredentialRef(kind="env", identifier="OPENAI_API_KEY"),
        ),
    ]


class ChatConfig(BaseModel):
    profiles: list[ModelProfile] = Field(default_factory=_default_profiles)
    default_profile_id: str | None = None
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1, le=MAX_ITERATIONS_LIMIT)
    approval_mode: ToolApprovalMode = ToolApprovalMode.STANDARD
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}.")
        return level

    @model_validator(mode="after")
    def _validate_profiles(self) -> "ChatConfig":
        if not self.profiles:
            raise ValueError("At least one model profile is required.")
        seen: set[str] = set()
        for p in self.profiles:
            if p.profile_id in seen:
                raise ValueError(f"Duplicate profile_id: {p.profile_id}")
            seen.add(p.profile_id)
        if self.default_profile_id is None:
            self.default_profile_id = self.profiles[0].profile_id
        elif self.default_profile_id not in seen:
            raise ValueError(f"default_profile_id {self.default_profile_id!r} does not name a configured profile.")
        return self

    def get_profile(self, profile_id: str | None = None) -> ModelProfile:
        wanted = profile_id or self.default_profile_id
        for p in self.profiles:
            if p.profile_id == wanted:
                return p
        raise ModelConfigError(f"Unknown model profile: {wanted}")


def config_path(project_root: Path) -> Path:
    return project_root / CONFIG_DIRNAME / CONFIG_FILENAME


def load_config(
    project_root: Path,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ChatConfig:
    """
    Build the effective config: defaults < `.chatrelay/config.json` < env vars < overrides.

    `overrides` carries CLI flags; `None` values are ignored.
    """

    environ = os.environ if env is None else env
    data: dict[str, Any] = {}

    path = config_path(project_root)
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ModelConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ModelConfigError(f"Config file {path} must contain a JSON object.")
        data.update(raw)

    env_map = {
        "CHATRELAY_PROFILE": "default_profile_id",
        "CHATRELAY_MAX_ITERATIONS": "max_iterations",
        "CHATRELAY_APPROVAL_MODE": "approval_mode",
        "CHATRELAY_LOG_LEVEL": "log_level",
    }
    for var, key in env_map.items():
        value = environ.get(var)
        if isinstance(value, str) and value.strip():
            data[key] = value.strip()

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        return ChatConfig.model_validate(data)
    except ValidationError as e:
        raise ModelConfigError(f"Invalid chatrelay config: {e}") from e

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class ProviderKind(StrEnum):
    ANTHROPIC = "anthropic"
    OPENAI_COMPATIBLE = "openai_compatible"


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool declaration as advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_anthropic(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": dict(self.input_schema)}

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema),
            },
        }


class CredentialRef(BaseModel):
    """Where an API key comes from; the secret itself is never stored in config."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["env", "file", "inline", "plaintext"] = "env"
    identifier: str

    def to_redacted_string(self) -> str:
        if self.kind in {"env", "file"}:
            return f"{self.kind}:{self.identifier}"
        return f"{self.kind}:***"

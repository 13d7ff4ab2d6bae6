"""Tests for config loading and credential resolution."""

from __future__ import annotations

import json

import pytest

from chatrelay.runtime.config import ChatConfig, config_path, load_config
from chatrelay.runtime.llm.errors import CredentialResolutionError, ModelConfigError
from chatrelay.runtime.llm.secrets import resolve_credential
from chatrelay.runtime.llm.types import CredentialRef, ProviderKind
from chatrelay.runtime.tools.runtime import ToolApprovalMode


def _write_config(root, data) -> None:
    path = config_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path, env={})

    assert config.max_iterations == 10
    assert config.approval_mode is ToolApprovalMode.STANDARD
    assert config.log_level == "INFO"
    assert config.default_profile_id == "anthropic"
    assert [p.profile_id for p in config.profiles] == ["anthropic", "openai"]
    assert config.get_profile("openai").provider_kind is ProviderKind.OPENAI_COMPATIBLE


def test_precedence_file_env_overrides(tmp_path):
    _write_config(
        tmp_path,
        {
            "profiles": [
                {"profile_id": "local", "provider_kind": "openai_compatible", "model_name": "llama3",
                 "base_url": "http://localhost:11434/v1/", "credential_ref": {"kind": "inline", "identifier": "x"}},
                {"profile_id": "claude", "model_name": "claude-sonnet-4-5",
                 "credential_ref": {"identifier": "ANTHROPIC_API_KEY"}},
            ],
            "max_iterations": 5,
            "approval_mode": "strict",
        },
    )

    config = load_config(tmp_path, env={"CHATRELAY_MAX_ITERATIONS": "7", "CHATRELAY_LOG_LEVEL": "debug"})
    assert config.max_iterations == 7
    assert config.approval_mode is ToolApprovalMode.STRICT
    assert config.log_level == "DEBUG"
    assert config.default_profile_id == "local"
    assert config.get_profile().base_url == "http://localhost:11434/v1"

    config = load_config(
        tmp_path,
        env={"CHATRELAY_MAX_ITERATIONS": "7"},
        overrides={"max_iterations": 3, "default_profile_id": "claude", "approval_mode": None},
    )
    assert config.max_iterations == 3
    assert config.get_profile().profile_id == "claude"
    assert config.approval_mode is ToolApprovalMode.STRICT


@pytest.mark.parametrize("value", [0, 257, "many"])
def test_invalid_max_iterations(tmp_path, value):
    with pytest.raises(ModelConfigError):
        load_config(tmp_path, env={}, overrides={"max_iterations": value})


def test_unknown_default_profile(tmp_path):
    with pytest.raises(ModelConfigError, match="does not name a configured profile"):
        load_config(tmp_path, env={"CHATRELAY_PROFILE": "missing"})


def test_bad_config_file(tmp_path):
    path = config_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ModelConfigError, match="Cannot read config file"):
        load_config(tmp_path, env={})

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ModelConfigError, match="JSON object"):
        load_config(tmp_path, env={})


def test_get_profile_unknown():
    config = ChatConfig()
    with pytest.raises(ModelConfigError):
        config.get_profile("nope")


def test_duplicate_profile_ids_rejected():
    ref = {"identifier": "K"}
    with pytest.raises(ValueError):
        ChatConfig.model_validate(
            {"profiles": [{"profile_id": "a", "model_name": "m", "credential_ref": ref}] * 2}
        )


def test_resolve_credential_from_env(monkeypatch):
    monkeypatch.setenv("CHATRELAY_TEST_KEY", "  sk-test  ")
    assert resolve_credential(CredentialRef(kind="env", identifier="CHATRELAY_TEST_KEY")) == "sk-test"

    monkeypatch.delenv("CHATRELAY_TEST_KEY")
    with pytest.raises(CredentialResolutionError) as exc_info:
        resolve_credential(CredentialRef(kind="env", identifier="CHATRELAY_TEST_KEY"))
    assert exc_info.value.credential_ref == "env:CHATRELAY_TEST_KEY"


def test_inline_credential_is_redacted():
    ref = CredentialRef(kind="inline", identifier="sk-secret")
    assert resolve_credential(ref) == "sk-secret"
    assert ref.to_redacted_string() == "inline:***"


def test_file_credential(tmp_path):
    key_file = tmp_path / "key.txt"
    key_file.write_text("sk-from-file\n", encoding="utf-8")
    ref = CredentialRef(kind="file", identifier=str(key_file))
    assert resolve_credential(ref) == "sk-from-file"
    assert ref.to_redacted_string() == f"file:{key_file}"

    with pytest.raises(CredentialResolutionError):
        resolve_credential(CredentialRef(kind="file", identifier=str(tmp_path / "missing.txt")))

from __future__ import annotations

import os
from pathlib import Path

from .errors import CredentialResolutionError
from .types import CredentialRef


def _fail(ref: CredentialRef, message: str) -> CredentialResolutionError:
    return CredentialResolutionError(message, credential_ref=ref.to_redacted_string())


def _from_env(ref: CredentialRef) -> str:
    value = (os.environ.get(ref.identifier) or "").strip()
    if not value:
        raise _fail(ref, f"Environment variable '{ref.identifier}' is not set or empty.")
    return value


def _from_file(ref: CredentialRef) -> str:
    path = Path(ref.identifier).expanduser()
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise _fail(ref, f"Cannot read credential file {str(path)!r}: {e.strerror or e}.") from e
    if not value:
        raise _fail(ref, f"Credential file {str(path)!r} is empty.")
    return value


def _from_inline(ref: CredentialRef) -> str:
    if not ref.identifier:
        raise _fail(ref, "Inline credential is empty.")
    return ref.identifier


_RESOLVERS = {
    "env": _from_env,
    "file": _from_file,
    "inline": _from_inline,
    "plaintext": _from_inline,
}


def resolve_credential(credential_ref: CredentialRef) -> str:
    """Return the API key a profile points at; raises CredentialResolutionError."""
    resolver = _RESOLVERS.get(credential_ref.kind)
    if resolver is None:
        raise _fail(credential_ref, f"Unsupported credential kind '{credential_ref.kind}'.")
    return resolver(credential_ref)

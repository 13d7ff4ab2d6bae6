from __future__ import annotations

import inspect
import logging
from typing import Any

import httpx

from .client_httpx_errors import _wrap_httpx_like_exception, is_httpx_error
from .errors import CredentialResolutionError, LLMErrorCode, LLMRequestError, wrap_provider_exception
from .secrets import resolve_credential
from .types import CredentialRef, ProviderKind

logger = logging.getLogger(__name__)


def _resolve_api_key(credential_ref: CredentialRef, *, provider_kind: ProviderKind, profile_id: str, model: str) -> str:
    try:
        return resolve_credential(credential_ref)
    except CredentialResolutionError as e:
        raise LLMRequestError(
            str(e),
            code=LLMErrorCode.AUTH,
            provider_kind=provider_kind,
            profile_id=profile_id,
            model=model,
            operation="resolve_credential",
            cause=e,
        ) from e


def _build_http_client(timeout_s: float) -> httpx.AsyncClient:
    timeout = httpx.Timeout(float(timeout_s), connect=min(float(timeout_s), 10.0))
    return httpx.AsyncClient(timeout=timeout)


def _wrap_request_error(
    exc: BaseException,
    *,
    provider_kind: ProviderKind,
    profile_id: str,
    model: str | None,
    operation: str,
) -> LLMRequestError:
    if is_httpx_error(exc):
        return _wrap_httpx_like_exception(
            exc,
            provider_kind=provider_kind,
            profile_id=profile_id,
            model=model,
            operation=operation,
        )
    return wrap_provider_exception(
        exc,
        provider_kind=provider_kind,
        profile_id=profile_id,
        model=model,
        operation=operation,
    )


async def _maybe_close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None) or getattr(stream, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.debug("Ignoring error while closing provider stream", exc_info=True)

from __future__ import annotations

import httpx

from .errors import LLMErrorCode, LLMRequestError, classify_status_code
from .types import ProviderKind

_BODY_SNIPPET_CHARS = 2000


def is_httpx_error(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPError)


def _httpx_error_code(exc: BaseException) -> LLMErrorCode:
    if isinstance(exc, httpx.TimeoutException):
        return LLMErrorCode.TIMEOUT
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return LLMErrorCode.NETWORK_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status_code(exc.response.status_code)
    return LLMErrorCode.UNKNOWN


def _response_snippet(exc: httpx.HTTPStatusError) -> str | None:
    try:
        text = exc.response.text
    except httpx.ResponseNotRead:
        return None
    text = text.strip() if isinstance(text, str) else ""
    return text[:_BODY_SNIPPET_CHARS] or None


def _wrap_httpx_like_exception(
    exc: BaseException,
    *,
    provider_kind: ProviderKind,
    profile_id: str,
    model: str | None,
    operation: str,
) -> LLMRequestError:
    """
    Translate raw httpx failures into `LLMRequestError`.

    The provider SDKs wrap request errors themselves, but reads from an already-open
    streaming response can still surface bare httpx exceptions mid-stream.
    """

    message = str(exc) or type(exc).__name__
    status_code: int | None = None
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        snippet = _response_snippet(exc)
        if snippet:
            message = f"{message}\n\nProvider response (truncated):\n{snippet}"
    return LLMRequestError(
        message,
        code=_httpx_error_code(exc),
        provider_kind=provider_kind,
        profile_id=profile_id,
        model=model,
        status_code=status_code,
        operation=operation,
        cause=exc,
    )

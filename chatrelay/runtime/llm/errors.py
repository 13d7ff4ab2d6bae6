from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import anthropic
import openai

from ..error_codes import ErrorCode
from .types import ProviderKind

logger = logging.getLogger(__name__)

LLMErrorCode = ErrorCode

_RETRYABLE = frozenset({ErrorCode.TIMEOUT, ErrorCode.RATE_LIMIT, ErrorCode.SERVER_ERROR, ErrorCode.NETWORK_ERROR})

_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.AUTH,
    403: ErrorCode.PERMISSION,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.UNPROCESSABLE,
    429: ErrorCode.RATE_LIMIT,
}

# Order matters: APITimeoutError subclasses APIConnectionError in both SDKs.
_SDK_ERRORS: tuple[tuple[str, ErrorCode], ...] = (
    ("APITimeoutError", ErrorCode.TIMEOUT),
    ("APIConnectionError", ErrorCode.NETWORK_ERROR),
    ("APIResponseValidationError", ErrorCode.RESPONSE_VALIDATION),
)


class ModelConfigError(ValueError):
    pass


class CredentialResolutionError(RuntimeError):
    def __init__(self, message: str, *, credential_ref: str | None = None) -> None:
        super().__init__(message)
        self.credential_ref = credential_ref


class ProviderAdapterError(RuntimeError):
    """The provider sent something the endpoint cannot map onto stream events."""


class CancellationToken:
    """
    Cooperative cancellation signal shared by the stream consumer and the tool gateway.

    Backed by a `threading.Event` so worker threads can poll it; asyncio code registers
    callbacks via `on_cancel()` to react without polling.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            pending, self._callbacks = self._callbacks, []
        for cb in pending:
            _run_callback(cb)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run `callback` once on cancel (now, if already cancelled); returns an unregister function."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._forget(callback)
        _run_callback(callback)
        return lambda: None

    def _forget(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


def _run_callback(cb: Callable[[], None]) -> None:
    try:
        cb()
    except Exception:
        logger.exception("Cancellation callback failed")


class LLMRequestError(RuntimeError):
    """A model request failed; `code` says how, `retryable` whether trying again may help."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        provider_kind: ProviderKind | None = None,
        profile_id: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider_kind = provider_kind
        self.profile_id = profile_id
        self.model = model
        self.status_code = status_code
        self.operation = operation
        self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return self.code in _RETRYABLE


def classify_status_code(status_code: int) -> ErrorCode:
    if status_code >= 500:
        return ErrorCode.SERVER_ERROR
    return _STATUS_CODES.get(status_code, ErrorCode.UNKNOWN)


def classify_provider_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, LLMRequestError):
        return exc.code
    for sdk in (anthropic, openai):
        for name, code in _SDK_ERRORS:
            if isinstance(exc, getattr(sdk, name)):
                return code
    # APIStatusError subclasses in both SDKs carry the HTTP status.
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_status_code(status_code)
    return ErrorCode.UNKNOWN


def wrap_provider_exception(
    exc: BaseException,
    *,
    provider_kind: ProviderKind,
    profile_id: str,
    model: str | None,
    operation: str,
) -> LLMRequestError:
    if isinstance(exc, LLMRequestError):
        return exc
    status_code = getattr(exc, "status_code", None)
    message = str(exc) or type(exc).__name__
    detail = _error_body_message(getattr(exc, "body", None))
    if detail and detail not in message:
        message = f"{message}: {detail}"
    return LLMRequestError(
        message,
        code=classify_provider_exception(exc),
        provider_kind=provider_kind,
        profile_id=profile_id,
        model=model,
        status_code=status_code if isinstance(status_code, int) else None,
        operation=operation,
        cause=exc,
    )


def _error_body_message(body: Any, *, limit: int = 2000) -> str | None:
    # OpenAI: {"error": {"message", "type"}}; Anthropic: {"type": "error", "error": {"type", "message"}}
    if isinstance(body, dict):
        inner = body.get("error") if isinstance(body.get("error"), dict) else body
        msg = inner.get("message")
        kind = inner.get("type")
        if isinstance(msg, str) and msg.strip():
            if isinstance(kind, str) and kind.strip() and kind != "error":
                return f"{msg.strip()} (type={kind.strip()})"
            return msg.strip()
        return repr(body)[:limit]
    if isinstance(body, str) and body.strip():
        return body.strip()[:limit]
    return None

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    BAD_REQUEST = "bad_request"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNPROCESSABLE = "unprocessable"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    RESPONSE_VALIDATION = "response_validation"
    CANCELLED = "cancelled"
    TOOL_UNKNOWN = "tool_unknown"
    TOOL_FAILED = "tool_failed"
    ITERATION_LIMIT = "iteration_limit"
    BUSY = "busy"
    UNKNOWN = "unknown"

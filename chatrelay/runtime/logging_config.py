from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "anthropic",
    "openai",
    "asyncio",
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Handler | None:
    """
    Route `chatrelay` logs to a rotating file so they never interleave with the console renderer.

    Without `log_file`, records propagate to whatever the host application configured.
    Noisy third-party loggers are capped at WARNING either way.
    """

    resolved = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger("chatrelay")
    root.setLevel(resolved)

    handler: logging.Handler | None = None
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        for existing in list(root.handlers):
            if getattr(existing, "_chatrelay_managed", False):
                root.removeHandler(existing)
                existing.close()
        handler._chatrelay_managed = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        root.propagate = False

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
    return handler

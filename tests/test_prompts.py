"""Tests for prompt templates and logging setup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from chatrelay.runtime.logging_config import NOISY_LOGGERS, configure_logging
from chatrelay.runtime.prompts import load_default_system_prompt, render_prompt_template


def test_render_tokens():
    now = datetime(2024, 3, 5, 14, 30, 0, tzinfo=timezone(timedelta(hours=8)))
    text = "{{TODAY}} {{NOW:%H:%M}} {{TZ}} {{workspace}} {{ WORKSPACE }} {{UNKNOWN}}"

    out = render_prompt_template(text, now=now, vars={"workspace": "/proj"})

    assert out == "2024-03-05 14:30 UTC+08:00 {{workspace}} /proj {{UNKNOWN}}"


def test_default_prompt_mentions_tools_and_workspace():
    prompt = load_default_system_prompt()
    assert "{{WORKSPACE}}" in prompt
    assert "run_command" in prompt

    rendered = render_prompt_template(prompt, vars={"WORKSPACE": "/srv/app"})
    assert "/srv/app" in rendered
    assert "{{" not in rendered


def test_configure_logging_writes_to_file(tmp_path):
    logger = logging.getLogger("chatrelay")
    saved = (logger.level, logger.propagate, list(logger.handlers))
    log_file = tmp_path / "logs" / "chatrelay.log"
    try:
        handler = configure_logging("debug", log_file)
        again = configure_logging("info", log_file)

        managed = [h for h in logger.handlers if getattr(h, "_chatrelay_managed", False)]
        assert managed == [again]
        assert handler not in logger.handlers
        assert logger.level == logging.INFO
        assert logger.propagate is False
        assert all(logging.getLogger(n).level == logging.WARNING for n in NOISY_LOGGERS)

        logging.getLogger("chatrelay.test").info("hello log")
        again.flush()
        assert "hello log" in log_file.read_text(encoding="utf-8")
    finally:
        for h in list(logger.handlers):
            if getattr(h, "_chatrelay_managed", False):
                logger.removeHandler(h)
                h.close()
        logger.setLevel(saved[0])
        logger.propagate = saved[1]
        logger.handlers[:] = saved[2]

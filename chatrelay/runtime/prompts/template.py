from __future__ import annotations

import re
from datetime import date, datetime
from importlib import resources
from typing import Callable, Mapping

# {{NAME}} or {{NAME:format}}; names are upper case only.
_TOKEN = re.compile(r"\{\{\s*(?P<name>[A-Z_]+)(?::(?P<fmt>[^}]+))?\s*\}\}")


def _utc_offset(now: datetime) -> str:
    offset = now.utcoffset()
    if offset is None:
        return "UTC"
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    hours, minutes = divmod(abs(minutes), 60)
    return f"UTC{sign}{hours:02d}:{minutes:02d}"


def _formatted(value: datetime | date, fmt: str | None, default: Callable[[], str]) -> str:
    if not fmt or not fmt.strip():
        return default()
    try:
        return value.strftime(fmt.strip())
    except ValueError:
        return default()


_BUILTINS: dict[str, Callable[[datetime, str | None], str]] = {
    "NOW": lambda now, fmt: _formatted(now, fmt, lambda: now.isoformat(timespec="seconds")),
    "TODAY": lambda now, fmt: _formatted(now.date(), fmt, now.date().isoformat),
    "TZ": lambda now, fmt: _utc_offset(now),
}


def render_prompt_template(text: str, *, now: datetime | None = None, vars: Mapping[str, str] | None = None) -> str:
    """
    Substitute ``{{TOKEN}}`` placeholders in a system prompt.

    Built-in tokens are ``NOW``, ``TODAY`` (both accept a strftime format after a
    colon) and ``TZ``. Names in ``vars`` are matched case-insensitively and take
    precedence. Unknown tokens are left untouched.
    """

    moment = now or datetime.now().astimezone()
    extra = {str(k).upper(): "" if v is None else str(v) for k, v in (vars or {}).items()}

    def _sub(match: re.Match[str]) -> str:
        name = match.group("name")
        if name in extra:
            return extra[name]
        render = _BUILTINS.get(name)
        if render is None:
            return match.group(0)
        return render(moment, match.group("fmt"))

    return _TOKEN.sub(_sub, text)


def load_default_system_prompt() -> str:
    return resources.files(__package__).joinpath("system_main.md").read_text(encoding="utf-8")

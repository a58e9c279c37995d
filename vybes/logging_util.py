import os
import sys
import json
from typing import Any

LEVELS = {"error": 0, "summary": 1, "debug": 2}
MAX_VALUE_LEN = 500


def _level_from_env() -> int:
    raw = os.getenv("VYBES_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "error"
    return LEVELS.get(raw.strip().lower(), 0)


LOG_LEVEL = _level_from_env()


def level_name() -> str:
    for name, val in LEVELS.items():
        if val == LOG_LEVEL:
            return name
    return "error"


def _render(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def fmt_kv(**kv: Any) -> str:
    """key=value pairs; None values are skipped and long values truncated."""
    parts = []
    for key, value in kv.items():
        if value is None:
            continue
        sval = _render(value)
        if len(sval) > MAX_VALUE_LEN:
            sval = sval[:MAX_VALUE_LEN] + "…"
        parts.append(f"{key}={sval}")
    return " ".join(parts)


def format_line(level: str, tag: str, msg: str, **kv: Any) -> str:
    line = f"[{level}][{tag}] {msg}"
    kvs = fmt_kv(**kv)
    return f"{line} | {kvs}" if kvs else line


def _log(level: str, tag: str, msg: str, **kv: Any) -> None:
    if LEVELS.get(level, 0) > LOG_LEVEL:
        return
    stream = sys.stderr if level == "error" else sys.stdout
    print(format_line(level, tag, msg, **kv), file=stream, flush=True)


def log_error(tag: str, msg: str, **kv: Any) -> None:
    _log("error", tag, msg, **kv)


def log_summary(tag: str, msg: str, **kv: Any) -> None:
    _log("summary", tag, msg, **kv)


def log_debug(tag: str, msg: str, **kv: Any) -> None:
    _log("debug", tag, msg, **kv)

"""repoiso 日志配置

普通文本和结构化 JSON 两种输出格式，一律写 stderr。
stdout 是执行单元的结果通道，任何日志都不能写到那里。
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import IO, Any

# 通过 extra= 或 ActionLogger 传入、需要透传到 JSON 的上下文字段
_CONTEXT_FIELDS = ("repo_id", "action", "pid")

# 第三方库的调试日志（每次加锁 / 解锁都会打）
_NOISY_LOGGERS = ("filelock",)

_TEXT_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器，便于编排进程采集

    输出格式:
        {
            "timestamp": "2024-01-01T12:00:00+00:00",
            "level": "INFO",
            "logger": "repoiso.services.supervisor",
            "message": "已启动: r1 (pid=4242, cmd=npm run start)",
            "module": "supervisor",
            "function": "run",
            "line": 42,
            "repo_id": "r1",          (仅在提供上下文时)
            "action": "run",          (同上)
            "exception": "..."        (仅在有异常时)
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


class ActionLogger(logging.LoggerAdapter):
    """给一次动作内的所有日志带上 repo_id / action"""

    def __init__(self, logger: logging.Logger, repo_id: str, action: str) -> None:
        super().__init__(logger, {"repo_id": repo_id, "action": action})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logging(
    level: str = "INFO", json_output: bool = False, stream: IO[str] | None = None,
) -> None:
    """配置根日志器（重复调用会替换之前的 handler）

    参数:
        level: DEBUG / INFO / WARNING / ERROR / CRITICAL，无法识别时按 INFO
        json_output: True 时输出 JSON 行
        stream: 输出流，默认 sys.stderr
    """
    reset_logging()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def reset_logging() -> None:
    """移除根日志器上的全部 handler"""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

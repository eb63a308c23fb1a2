"""CLI — 进程式执行单元入口（内部命令，由 ProcessUnit 启动）

协议: stdin 一行 JSON 请求 -> stdout 一行 JSON 结果。
结果写出后 fd 1 已指向 stderr，被启动的子进程和任何多余输出都不会混进结果通道。
写完结果后本进程继续驻留，直到监视线程与宽限期定时器结束。
"""

from __future__ import annotations

import json
import logging
import os
import sys

import click

from repoiso.cli import _svc
from repoiso.core.models import ActionResult

logger = logging.getLogger(__name__)


def register(group: click.Group) -> None:
    group.add_command(unit)


def _claim_stdout() -> int:
    """复制出结果通道 fd，然后把 fd 1 重定向到 stderr"""
    sys.stdout.flush()
    result_fd = os.dup(1)
    os.dup2(2, 1)
    return result_fd


@click.command(hidden=True)
def unit() -> None:
    """执行单个动作（内部使用）"""
    result_fd = _claim_stdout()
    line = sys.stdin.readline()
    try:
        data = json.loads(line)
    except ValueError as e:
        result = ActionResult.fail("", "", f"请求不是合法 JSON: {e}", code="VALIDATION_ERROR")
    else:
        result = _svc().dispatcher.dispatch_raw(data)

    with os.fdopen(result_fd, "w", encoding="utf-8") as out:
        out.write(json.dumps(result.to_dict(), ensure_ascii=False) + "\n")
        out.flush()

    supervisor = _svc().dispatcher.supervisor
    supervisor.wait_pending()
    logger.debug("执行单元结束: %s %s", result.action, result.repo_id)

"""repoiso 命令行接口

CLI 按职责拆分为子模块，每个模块注册自己的命令到 main group。
所有动作命令向 stdout 输出一个 JSON 结果，失败时退出码为 1。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import click

from repoiso import __version__
from repoiso.core.config import init_config
from repoiso.core.models import ActionResult
from repoiso.services.container import get_container, init_container
from repoiso.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def _parse_kv_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    """解析 key=value 参数对"""
    result: dict[str, str] = {}
    for p in pairs:
        if "=" in p:
            k, v = p.split("=", 1)
            result[k.strip()] = v.strip()
    return result


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


def _emit(result: ActionResult) -> None:
    """输出动作结果，等待本进程内的后台线程后退出；失败时退出码 1

    线程模式下 SIGKILL 定时器和退出监视线程都在 CLI 进程里，
    先等它们结束再返回，前台 run 因此会驻留到被启动的进程退出。
    """
    _echo_json(result.to_dict())
    _svc().manager.wait_pending()
    if not result.success:
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="", help="配置文件路径（默认 $REPOISO_CONFIG）")
@click.option("--workspace-dir", "-w", default="", help="覆盖工作空间根目录")
@click.option("--mode", type=click.Choice(["thread", "process"]), default=None,
              help="执行单元类型（默认取配置 unit_mode）")
def main(config_path: str, workspace_dir: str, mode: str | None) -> None:
    """repoiso - 隔离式代码仓生命周期管理"""
    setup_logging(
        level=os.getenv("REPOISO_LOG_LEVEL", "INFO"),
        json_output=os.getenv("REPOISO_LOG_JSON", "") == "1",
    )
    cfg = init_config(config_path)
    if workspace_dir:
        cfg.workspace_dir = workspace_dir
    init_container(
        cfg, mode=mode or "",
        config_path=str(Path(config_path).resolve()) if config_path else "",
    )


# 注册各职责子命令
from repoiso.cli.cmd_repo import register as _reg_repo  # noqa: E402
from repoiso.cli.cmd_admin import register as _reg_admin  # noqa: E402
from repoiso.cli.cmd_unit import register as _reg_unit  # noqa: E402

_reg_repo(main)
_reg_admin(main)
_reg_unit(main)

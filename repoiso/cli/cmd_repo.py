"""CLI — 代码仓生命周期命令"""

from __future__ import annotations

from typing import Any

import click

from repoiso.cli import _emit, _parse_kv_pairs, _svc


def register(group: click.Group) -> None:
    for cmd in (clone, update, install, run, stop, status, unload):
        group.add_command(cmd)


@click.command()
@click.argument("repo_url")
@click.option("--id", "repo_id", default="", help="repoId（默认由 URL 生成）")
@click.option("--branch", "-b", default="", help="分支（默认取配置 default_branch）")
@click.option("--depth", type=int, default=None, help="克隆深度（默认 1）")
def clone(repo_url: str, repo_id: str, branch: str, depth: int | None) -> None:
    """浅克隆代码仓到独立工作空间（已存在则先删除再克隆）"""
    _emit(_svc().manager.clone(repo_url, repo_id, branch=branch or None, depth=depth))


@click.command()
@click.argument("repo_id")
def update(repo_id: str) -> None:
    """从远端拉取更新"""
    _emit(_svc().manager.update(repo_id))


@click.command()
@click.argument("repo_id")
@click.option("--pm", "package_manager", type=click.Choice(["npm", "yarn", "pnpm"]),
              default=None, help="指定包管理器（默认按锁文件探测）")
@click.option("--production", is_flag=True, help="生产安装（冻结锁文件，剔除 devDependencies）")
def install(repo_id: str, package_manager: str | None, production: bool) -> None:
    """在工作空间内安装依赖"""
    _emit(_svc().manager.install(
        repo_id, package_manager=package_manager, production=production,
    ))


@click.command()
@click.argument("repo_id")
@click.option("--script", default="", help="package.json 中的脚本名（默认 start > dev > serve）")
@click.option("--port", type=int, default=None, help="注入 PORT 环境变量")
@click.option("--env", "env_pairs", multiple=True, help="环境变量 KEY=VALUE（可多次）")
@click.option("--background", is_flag=True, help="启动后立即返回，不做启动探测")
@click.option("--detached", is_flag=True, help="子进程放入独立进程组")
@click.option("--stdio", type=click.Choice(["log", "inherit", "ignore"]), default="log",
              help="子进程输出去向")
@click.option("--startup-delay", type=int, default=None, help="启动探测等待（毫秒）")
def run(repo_id: str, **kwargs: Any) -> None:
    """启动代码仓

    线程模式下本命令输出结果后继续驻留，直到被启动的进程退出并回写清单；
    需要立即返回时使用 --mode process。
    """
    _emit(_svc().manager.run(
        repo_id,
        script=kwargs["script"] or None,
        port=kwargs["port"],
        env=_parse_kv_pairs(kwargs["env_pairs"]),
        background=kwargs["background"],
        detached=kwargs["detached"],
        stdio=kwargs["stdio"],
        startup_delay=kwargs["startup_delay"],
    ))


@click.command()
@click.argument("repo_id")
def stop(repo_id: str) -> None:
    """停止运行中的代码仓（未运行时也成功）"""
    _emit(_svc().manager.stop(repo_id))


@click.command()
@click.argument("repo_id")
def status(repo_id: str) -> None:
    """查询代码仓状态快照"""
    _emit(_svc().manager.status(repo_id))


@click.command()
@click.argument("repo_id")
def unload(repo_id: str) -> None:
    """停止并删除工作空间（不存在时也成功）"""
    _emit(_svc().manager.unload(repo_id))

"""CLI — 列表 / 统计 / 清理"""

from __future__ import annotations

import click

from repoiso.cli import _echo_json, _svc


def register(group: click.Group) -> None:
    group.add_command(list_repos)
    group.add_command(stats)
    group.add_command(clean)


@click.command(name="list")
def list_repos() -> None:
    """列出工作空间根目录下的所有代码仓"""
    repos = _svc().manager.list_repositories()
    if not repos:
        click.echo("没有已加载的代码仓。", err=True)
    _echo_json(repos)


@click.command()
def stats() -> None:
    """统计信息"""
    _echo_json(_svc().manager.stats())


@click.command()
@click.option("--yes", is_flag=True, help="跳过确认")
def clean(yes: bool) -> None:
    """停止所有运行中的代码仓并删除全部工作空间"""
    mgr = _svc().manager
    if not yes:
        click.confirm(f"将删除 {mgr.workspace_dir} 下的全部工作空间，继续?", abort=True)
    result = mgr.clean_all()
    _echo_json(result)
    mgr.wait_pending()
    if result["failed"]:
        raise SystemExit(1)

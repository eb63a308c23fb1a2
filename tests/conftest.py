"""公共测试夹具

- FakeExecutor: 替代 git / 包管理器调用，git clone 时在目标目录生成文件
- make_tool: 在 PATH 最前面放一个假的可执行文件（run 子进程走真实 Popen）
"""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from repoiso.utils.shell import CommandResult

DEFAULT_PACKAGE_JSON = {
    "name": "demo",
    "scripts": {"start": "node server.js", "build": "tsc"},
    "dependencies": {"express": "^4.18.0"},
}


class FakeExecutor:
    """记录调用的假命令执行器

    failures: 命令前缀 -> (returncode, output)
    outputs:  命令前缀 -> stdout
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.clone_files: dict[str, str] = {
            "package.json": json.dumps(DEFAULT_PACKAGE_JSON),
        }
        self.failures: dict[str, tuple[int, str]] = {}
        self.outputs: dict[str, str] = {}

    def execute(self, cmd, *, cwd=".", env=None, timeout=None) -> CommandResult:
        self.calls.append({"cmd": list(cmd), "cwd": cwd, "env": env, "timeout": timeout})
        line = " ".join(cmd)
        for prefix, (rc, out) in self.failures.items():
            if line.startswith(prefix):
                return CommandResult(returncode=rc, stdout="", stderr=out)

        if cmd[:2] == ["git", "clone"]:
            dest = Path(cmd[-1])
            dest.mkdir(parents=True)
            (dest / ".git").mkdir()
            for name, content in self.clone_files.items():
                (dest / name).write_text(content, encoding="utf-8")
        elif len(cmd) > 1 and cmd[1] in ("install", "ci"):
            (Path(cwd) / "node_modules").mkdir(exist_ok=True)

        for prefix, out in self.outputs.items():
            if line.startswith(prefix):
                return CommandResult(returncode=0, stdout=out, stderr="")
        if cmd == ["node", "--version"]:
            return CommandResult(returncode=0, stdout="v20.11.0\n", stderr="")
        return CommandResult(returncode=0, stdout="", stderr="")

    def commands(self) -> list[str]:
        return [" ".join(c["cmd"]) for c in self.calls]


@pytest.fixture()
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def make_tool(tmp_path, monkeypatch):
    """make_tool("npm", 'exec sleep 30') -> 在 PATH 前部生成 sh 脚本"""
    bin_dir = tmp_path / "fake-bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _make(name: str, body: str) -> Path:
        tool = bin_dir / name
        tool.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
        tool.chmod(tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return tool

    return _make


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """每个用例使用独立的全局配置与服务容器"""
    import repoiso.core.config as config_mod
    from repoiso.services.container import reset_container

    monkeypatch.setattr(config_mod, "_current", None)
    for key in ("REPOISO_CONFIG", "REPOISO_WORKSPACE_DIR", "REPOISO_UNIT_MODE"):
        monkeypatch.delenv(key, raising=False)
    reset_container()
    yield
    reset_container()

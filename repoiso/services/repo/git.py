"""Git 操作封装 — 浅克隆 / 拉取 / 状态查询

职责：
- 按 depth / branch 浅克隆，私有仓库注入 token
- 克隆完成后把 origin 还原为不带 token 的地址，token 不落盘
- 所有 git 调用禁用交互式凭据提示并设置超时
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from repoiso.utils.net import inject_token, validate_repo_url
from repoiso.utils.shell import CommandExecutor, run_cmd

logger = logging.getLogger(__name__)

_LAST_COMMIT_FORMAT = "--format=%H %s %an %ad"


class GitOperator:
    """Git 命令封装"""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        token_env: str = "GITHUB_TOKEN",
        auth_hosts: list[str] | None = None,
        clone_timeout: float = 60,
        update_timeout: float = 30,
        query_timeout: float = 15,
    ) -> None:
        self._executor = executor
        self.token_env = token_env
        self.auth_hosts = auth_hosts if auth_hosts is not None else ["github.com"]
        self.clone_timeout = clone_timeout
        self.update_timeout = update_timeout
        self.query_timeout = query_timeout

    @property
    def token(self) -> str:
        return os.getenv(self.token_env, "") if self.token_env else ""

    def auth_url(self, url: str) -> tuple[str, bool]:
        """返回 (实际使用的 URL, 是否注入了凭据)"""
        authed = inject_token(url, self.token, self.auth_hosts)
        return authed, authed != url

    @staticmethod
    def _env() -> dict[str, str]:
        return {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    def _git(self, args: list[str], cwd: Path, timeout: float, label: str) -> str:
        r = run_cmd(
            ["git", *args], cwd=str(cwd), env=self._env(), timeout=timeout,
            label=label, executor=self._executor, redact=self.token,
        )
        return r.stdout

    def clone(self, url: str, dest: Path, *, branch: str, depth: int) -> bool:
        """浅克隆到 dest，返回是否使用了凭据注入

        dest 必须不存在；失败时保留半成品目录供排查。
        """
        validate_repo_url(url)
        clone_url, authenticated = self.auth_url(url)
        logger.info("克隆代码仓: %s@%s (depth=%d, auth=%s) -> %s",
                    url, branch, depth, authenticated, dest)
        self._git(
            ["clone", "--depth", str(depth), "--branch", branch, clone_url, str(dest)],
            cwd=dest.parent, timeout=self.clone_timeout, label="git clone",
        )
        if authenticated:
            self._git(
                ["remote", "set-url", "origin", url],
                cwd=dest, timeout=self.query_timeout, label="git remote set-url",
            )
        return authenticated

    @staticmethod
    def exclude_local(repo_path: Path, patterns: list[str]) -> None:
        """把隔离产生的文件写进 .git/info/exclude，避免污染 git status；尽力而为"""
        git_dir = repo_path / ".git"
        if not git_dir.is_dir():
            return
        exclude = git_dir / "info" / "exclude"
        try:
            text = exclude.read_text(encoding="utf-8") if exclude.is_file() else ""
            existing = set(text.splitlines())
            missing = [p for p in patterns if p not in existing]
            if not missing:
                return
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with open(exclude, "a", encoding="utf-8") as f:
                if text and not text.endswith("\n"):
                    f.write("\n")
                f.write("\n".join(missing) + "\n")
        except OSError as e:
            logger.warning("写入 %s 失败: %s", exclude, e)

    def pull(self, repo_path: Path, *, url: str = "", branch: str = "") -> None:
        """从远端拉取更新；需要凭据时直接对带 token 的地址 pull"""
        pull_url, authenticated = self.auth_url(url) if url else (url, False)
        if authenticated and branch:
            args = ["pull", pull_url, branch]
        else:
            args = ["pull", "origin"]
        self._git(args, cwd=repo_path, timeout=self.update_timeout, label="git pull")

    def describe(self, repo_path: Path) -> dict[str, Any]:
        """采集工作区状态：脏/干净、当前分支、最近一次提交"""
        porcelain = self._git(
            ["status", "--porcelain"], cwd=repo_path,
            timeout=self.query_timeout, label="git status",
        ).strip()
        branch = self._git(
            ["branch", "--show-current"], cwd=repo_path,
            timeout=self.query_timeout, label="git branch",
        ).strip()
        last_commit = self._git(
            ["log", "-1", _LAST_COMMIT_FORMAT, "--date=iso"], cwd=repo_path,
            timeout=self.query_timeout, label="git log",
        ).strip()
        return {
            "gitStatus": porcelain,
            "dirty": bool(porcelain),
            "currentBranch": branch,
            "lastCommit": last_commit,
        }

"""包管理器解析与依赖安装

职责:
- 按锁文件探测代码仓期望的包管理器 (yarn > pnpm > npm)
- 探测工具是否在 PATH 上，不可用时静默回退 npm
- 依赖安装（缓存目录重定向到工作空间内，不同代码仓互不共享全局缓存）
- package.json 静态分析：框架分类、依赖声明、脚本列表
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from repoiso.core.exceptions import RepoIsoError, ToolUnavailableError
from repoiso.core.models import PackageManager
from repoiso.utils.shell import CommandExecutor, CommandResult, run_cmd

logger = logging.getLogger(__name__)

# 按优先级排列：越具体的锁文件越靠前
LOCK_FILES: tuple[tuple[str, PackageManager], ...] = (
    ("yarn.lock", PackageManager.YARN),
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("package-lock.json", PackageManager.NPM),
)

# 依赖名 -> 框架，按顺序匹配（next 依赖 react，必须排在 react 之前）
FRAMEWORK_MARKERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("next",), "nextjs"),
    (("react", "@types/react"), "react"),
    (("vue", "@vue/cli"), "vue"),
    (("angular", "@angular/core"), "angular"),
    (("express",), "express"),
    (("fastify",), "fastify"),
)

PACKAGE_JSON = "package.json"
DEPS_MARKER = "node_modules"


def read_package_json(repo_path: Path) -> dict[str, Any] | None:
    """读取 package.json，不存在或无法解析返回 None"""
    p = repo_path / PACKAGE_JSON
    if not p.is_file():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("package.json 无法解析: %s (%s)", p, e)
        return None
    return data if isinstance(data, dict) else None


def declares_dependencies(pkg: dict[str, Any] | None) -> bool:
    """dependencies 或 devDependencies 非空"""
    if not pkg:
        return False
    return any(
        isinstance(pkg.get(key), dict) and pkg[key]
        for key in ("dependencies", "devDependencies")
    )


def declared_scripts(pkg: dict[str, Any] | None) -> dict[str, str]:
    scripts = (pkg or {}).get("scripts")
    return dict(scripts) if isinstance(scripts, dict) else {}


def has_installed_dependencies(repo_path: Path) -> bool:
    return (repo_path / DEPS_MARKER).is_dir()


class PackageManagerResolver:
    """包管理器解析器"""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        install_timeout: float = 300,
    ) -> None:
        self._executor = executor
        self.install_timeout = install_timeout

    # ---- 静态探测 ----

    @staticmethod
    def detect(repo_path: Path) -> PackageManager:
        """按锁文件探测包管理器，全部缺失时默认 npm"""
        for lock_file, pm in LOCK_FILES:
            if (repo_path / lock_file).exists():
                return pm
        return PackageManager.NPM

    @staticmethod
    def detect_framework(repo_path: Path) -> str:
        """根据 package.json 依赖做尽力而为的框架分类"""
        pkg = read_package_json(repo_path)
        if pkg is None:
            return "unknown"
        deps: dict[str, Any] = {}
        for key in ("dependencies", "devDependencies"):
            if isinstance(pkg.get(key), dict):
                deps.update(pkg[key])
        for names, framework in FRAMEWORK_MARKERS:
            if any(n in deps for n in names):
                return framework
        return "nodejs"

    # ---- 可用性 ----

    @staticmethod
    def ensure_available(pm: PackageManager, env: dict[str, str] | None = None) -> str:
        """返回工具的可执行路径，不在 PATH 上时抛 ToolUnavailableError"""
        search_path = (env or os.environ).get("PATH")
        found = shutil.which(pm.value, path=search_path)
        if found is None:
            raise ToolUnavailableError(f"{pm.value} 不在 PATH 上")
        return found

    def resolve(
        self, preferred: str, repo_path: Path, env: dict[str, str] | None = None,
    ) -> PackageManager:
        """显式指定优先，其次锁文件探测；工具不可用时回退 npm（记日志，不报错）"""
        pm = PackageManager(preferred) if preferred else self.detect(repo_path)
        if pm is PackageManager.NPM:
            return pm
        try:
            self.ensure_available(pm, env)
        except ToolUnavailableError as e:
            logger.warning("%s，回退到 npm", e)
            return PackageManager.NPM
        return pm

    # ---- 命令构造 ----

    @staticmethod
    def install_command(pm: PackageManager, production: bool = False) -> list[str]:
        """安装命令：production 时使用锁文件冻结的干净安装并剔除 devDependencies"""
        if pm is PackageManager.YARN:
            return ["yarn", "install", "--production", "--frozen-lockfile"] if production \
                else ["yarn", "install"]
        if pm is PackageManager.PNPM:
            return ["pnpm", "install", "--prod", "--frozen-lockfile"] if production \
                else ["pnpm", "install"]
        return ["npm", "ci", "--omit=dev"] if production else ["npm", "install"]

    @staticmethod
    def run_command(pm: PackageManager, script: str) -> list[str]:
        if pm is PackageManager.YARN:
            return ["yarn", script]
        return [pm.value, "run", script]

    @staticmethod
    def isolated_env(repo_path: Path, production: bool = False) -> dict[str, str]:
        """安装环境：各包管理器的缓存 / store 都指向工作空间内"""
        return {
            **os.environ,
            "NPM_CONFIG_CACHE": str(repo_path / ".npm-cache"),
            "YARN_CACHE_FOLDER": str(repo_path / ".yarn-cache"),
            "NPM_CONFIG_STORE_DIR": str(repo_path / ".pnpm-store"),
            "NODE_ENV": "production" if production else "development",
        }

    # ---- 执行 ----

    def install(
        self, repo_path: Path, preferred: str = "", production: bool = False,
    ) -> PackageManager:
        """在工作空间内安装依赖，返回实际使用的包管理器"""
        env = self.isolated_env(repo_path, production)
        pm = self.resolve(preferred, repo_path, env)
        cmd = self.install_command(pm, production)
        logger.info("安装依赖: %s (pm=%s, production=%s)", repo_path.name, pm.value, production)
        run_cmd(
            cmd, cwd=str(repo_path), env=env, timeout=self.install_timeout,
            label=f"{pm.value} install", executor=self._executor,
        )
        return pm

    def node_version(self) -> str | None:
        """node --version，尽力而为；失败返回 None"""
        try:
            r: CommandResult = run_cmd(
                ["node", "--version"], timeout=10, label="node --version",
                executor=self._executor,
            )
        except RepoIsoError as e:
            logger.debug("无法获取 node 版本: %s", e)
            return None
        return r.stdout.strip() or None

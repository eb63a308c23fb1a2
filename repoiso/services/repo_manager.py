"""代码仓管理门面 — 编排进程侧的调用入口

每个生命周期动作都交给一个全新的执行单元完成；门面本身不保存任何代码仓状态，
列表与统计直接扫描磁盘上的清单。
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from repoiso.core.config import Config
from repoiso.core.exceptions import ValidationError
from repoiso.core.manifest import ManifestStore
from repoiso.core.models import (
    Action,
    ActionConfig,
    ActionRequest,
    ActionResult,
    to_camel,
    validate_repo_id,
)
from repoiso.services.repo.workspace import WorkspaceManager
from repoiso.services.supervisor import is_alive
from repoiso.services.unit import ExecutionUnit, make_unit

logger = logging.getLogger(__name__)

_GITHUB_RE = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def generate_repo_id(repo_url: str) -> str:
    """GitHub 地址取 owner-repo，其他地址取 URL 哈希前缀"""
    m = _GITHUB_RE.search(repo_url.strip())
    if m:
        candidate = _UNSAFE_ID_CHARS.sub("-", f"{m.group(1)}-{m.group(2)}").strip("-.")
        try:
            validate_repo_id(candidate)
        except ValidationError:
            pass
        else:
            return candidate
    digest = hashlib.sha256(repo_url.encode("utf-8")).hexdigest()[:10]
    return f"repo-{digest}"


class RepoManager:
    """代码仓管理器"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        workspace_dir: str = "",
        unit: ExecutionUnit | None = None,
        mode: str = "",
    ) -> None:
        if config is None:
            from repoiso.core.config import get_config
            config = get_config()
        self.config = config
        self.workspace_dir = workspace_dir or config.workspace_dir
        self.unit = unit or make_unit(config, mode)
        self.workspaces = WorkspaceManager(
            self.workspace_dir,
            manifests=ManifestStore(config.manifest_name),
            lock_dir_name=config.lock_dir_name,
        )

    def _submit(
        self, action: Action, repo_id: str, repo_url: str = "", **options: Any,
    ) -> ActionResult:
        raw = {to_camel(k): v for k, v in options.items() if v is not None}
        try:
            request = ActionRequest(
                action=action,
                repo_id=repo_id,
                workspace_dir=self.workspace_dir,
                repo_url=repo_url,
                config=ActionConfig.from_dict(raw),
            )
            validate_repo_id(repo_id)
        except ValidationError as e:
            return ActionResult.fail(action.value, repo_id, str(e), code=e.code)
        return self.unit.submit(request)

    # ---- 生命周期动作 ----

    def clone(self, repo_url: str, repo_id: str = "", **options: Any) -> ActionResult:
        """克隆代码仓；未指定 repo_id 时由 URL 生成"""
        repo_id = repo_id or generate_repo_id(repo_url)
        return self._submit(Action.CLONE, repo_id, repo_url, **options)

    def update(self, repo_id: str) -> ActionResult:
        return self._submit(Action.UPDATE, repo_id)

    def install(self, repo_id: str, **options: Any) -> ActionResult:
        return self._submit(Action.INSTALL, repo_id, **options)

    def run(self, repo_id: str, **options: Any) -> ActionResult:
        return self._submit(Action.RUN, repo_id, **options)

    def stop(self, repo_id: str) -> ActionResult:
        return self._submit(Action.STOP, repo_id)

    def unload(self, repo_id: str) -> ActionResult:
        return self._submit(Action.UNLOAD, repo_id)

    def status(self, repo_id: str) -> ActionResult:
        return self._submit(Action.STATUS, repo_id)

    def wait_pending(self, timeout: float | None = None) -> None:
        """等待执行单元留在本进程的后台线程（线程模式下 CLI 退出前调用）"""
        self.unit.wait_pending(timeout)

    # ---- 只读视图 ----

    def list_repositories(self) -> list[dict[str, Any]]:
        """扫描工作空间根目录，返回每个代码仓的清单摘要"""
        repos: list[dict[str, Any]] = []
        for name, manifest in self.workspaces.list_workspaces():
            entry = manifest.to_dict()
            entry["id"] = name
            entry["phase"] = manifest.phase.value
            entry["processAlive"] = is_alive(manifest.process_id) if manifest.is_running else False
            repos.append(entry)
        return repos

    def stats(self) -> dict[str, Any]:
        repos = self.list_repositories()
        return {
            "totalRepositories": len(repos),
            "runningRepositories": sum(1 for r in repos if r["processAlive"]),
            "workspaceDir": str(self.workspace_dir),
            "unitMode": type(self.unit).__name__,
            "repositories": repos,
        }

    # ---- 清理 ----

    def clean_all(self) -> dict[str, list[str]]:
        """停止并卸载所有工作空间，最后删除锁目录"""
        removed: list[str] = []
        failed: list[str] = []
        root = self.workspaces.workspace_root
        if root.is_dir():
            for entry in sorted(root.iterdir()):
                if not entry.is_dir() or entry == self.workspaces.lock_dir:
                    continue
                result = self.unload(entry.name)
                if result.success:
                    removed.append(entry.name)
                else:
                    logger.warning("清理失败: %s (%s)", entry.name, result.error)
                    failed.append(entry.name)
        self.workspaces.remove_locks()
        logger.info("清理完成: 删除 %d 个，失败 %d 个", len(removed), len(failed))
        return {"removed": removed, "failed": failed}

"""工作空间管理 — 一个 repoId 一个目录

职责：
- 计算 / 创建 / 删除工作空间目录
- 扫描工作空间根目录下已有的清单
- 同一 repoId 的 advisory 文件锁（锁文件放在根目录的 .locks/ 下，unload 删目录不影响锁）
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from repoiso.core.exceptions import WorkspaceBusyError
from repoiso.core.manifest import ManifestStore
from repoiso.core.models import Manifest, validate_repo_id

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """工作空间管理器"""

    def __init__(
        self,
        workspace_root: str = "",
        manifests: ManifestStore | None = None,
        lock_dir_name: str = ".locks",
    ) -> None:
        if not workspace_root:
            from repoiso.core.config import get_config
            workspace_root = get_config().workspace_dir
        self.workspace_root = Path(workspace_root)
        self.manifests = manifests or ManifestStore()
        self.lock_dir = self.workspace_root / lock_dir_name

    def path(self, repo_id: str) -> Path:
        validate_repo_id(repo_id)
        return self.workspace_root / repo_id

    def exists(self, repo_id: str) -> bool:
        return self.path(repo_id).is_dir()

    def ensure_root(self) -> None:
        self.workspace_root.mkdir(parents=True, exist_ok=True)

    def remove(self, repo_id: str) -> bool:
        """递归强制删除工作空间，不存在时返回 False"""
        repo_path = self.path(repo_id)
        if not repo_path.exists():
            return False
        if repo_path.is_symlink() or not repo_path.is_dir():
            repo_path.unlink()
        elif sys.version_info >= (3, 12):
            shutil.rmtree(repo_path, onexc=_force_writable)
        else:
            shutil.rmtree(repo_path, onerror=_force_writable)
        logger.info("工作空间已删除: %s", repo_path)
        return True

    def list_workspaces(self) -> list[tuple[str, Manifest]]:
        """列出根目录下所有带清单的工作空间"""
        result: list[tuple[str, Manifest]] = []
        if not self.workspace_root.is_dir():
            return result
        for repo_dir in sorted(self.workspace_root.iterdir()):
            if not repo_dir.is_dir() or repo_dir == self.lock_dir:
                continue
            manifest = self.manifests.load(repo_dir)
            if manifest is None:
                logger.debug("跳过无清单目录: %s", repo_dir)
                continue
            result.append((repo_dir.name, manifest))
        return result

    @contextmanager
    def lock(self, repo_id: str, timeout: float) -> Iterator[None]:
        """持有 repoId 的 advisory 锁；等待超时抛 WorkspaceBusyError"""
        validate_repo_id(repo_id)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_dir / f"{repo_id}.lock"))
        try:
            lock.acquire(timeout=timeout)
        except Timeout:
            raise WorkspaceBusyError(
                f"代码仓 {repo_id} 正被另一个动作占用（等待 {timeout}s 超时）"
            ) from None
        try:
            yield
        finally:
            lock.release()

    def remove_locks(self) -> None:
        if self.lock_dir.exists():
            shutil.rmtree(self.lock_dir, ignore_errors=True)


def _force_writable(func, path, _exc) -> None:  # type: ignore[no-untyped-def]
    """rmtree 遇到只读文件时改权限后重试"""
    os.chmod(path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(path)

"""清单存储 — 工作空间内 .isolation-manifest.json 的读写

所有状态迁移都走 "读取 → 决定新状态 → 整体写回" 一个原语，从不局部 patch。
写入不自动创建父目录：工作空间已被 unload 时写入直接失败，而不是把目录重新建出来。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from repoiso.core.exceptions import NotFoundError
from repoiso.core.models import Manifest
from repoiso.utils.fileio import load_json, save_json

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_NAME = ".isolation-manifest.json"


def utc_now() -> str:
    """清单中统一使用的 ISO-8601 UTC 时间戳"""
    return datetime.now(tz=timezone.utc).isoformat()


class ManifestStore:
    """清单读写器"""

    def __init__(self, manifest_name: str = DEFAULT_MANIFEST_NAME) -> None:
        self.manifest_name = manifest_name

    def path(self, repo_path: Path) -> Path:
        return repo_path / self.manifest_name

    def load(self, repo_path: Path) -> Manifest | None:
        """读取清单，不存在或损坏时返回 None"""
        data = load_json(self.path(repo_path))
        if data is None:
            return None
        return Manifest.from_dict(data)

    def require(self, repo_path: Path, repo_id: str) -> Manifest:
        """读取清单，缺失时抛 NotFoundError"""
        manifest = self.load(repo_path)
        if manifest is None:
            raise NotFoundError(f"代码仓 {repo_id} 的清单不存在")
        return manifest

    def save(self, repo_path: Path, manifest: Manifest) -> Manifest:
        """整体重写清单"""
        save_json(self.path(repo_path), manifest.to_dict(), create_parent=False)
        logger.debug("清单已写入: %s (status=%s, pid=%s)",
                     repo_path.name, manifest.status, manifest.process_id)
        return manifest

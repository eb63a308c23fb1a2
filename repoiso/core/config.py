"""集中配置管理

替代各模块散落的超时 / 路径常量，提供统一的配置入口。
支持从 YAML 文件加载 + 环境变量覆盖 + 编程式覆盖。
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field

from repoiso.core.exceptions import ConfigError
from repoiso.utils.fileio import load_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "configs/default.yml"

# 环境变量 -> 配置字段
_ENV_OVERRIDES = {
    "REPOISO_WORKSPACE_DIR": "workspace_dir",
    "REPOISO_UNIT_MODE": "unit_mode",
}


@dataclass
class Config:
    """全局配置"""

    # 目录 / 文件名
    workspace_dir: str = "data/workspaces"
    manifest_name: str = ".isolation-manifest.json"
    run_log_name: str = ".isolation-run.log"
    lock_dir_name: str = ".locks"

    # 克隆
    default_branch: str = "main"
    default_depth: int = 1
    token_env: str = "GITHUB_TOKEN"
    auth_hosts: list[str] = field(default_factory=lambda: ["github.com"])

    # 超时（秒）
    clone_timeout: int = 60
    update_timeout: int = 30
    install_timeout: int = 300
    git_query_timeout: int = 15

    # 运行 / 停止
    startup_delay_ms: int = 3000
    stop_grace_seconds: float = 5.0

    # 执行单元
    unit_mode: str = "thread"
    unit_timeout: int = 330

    # 同一 repoId 的动作串行化（advisory 文件锁）
    lock_actions: bool = True
    lock_timeout: float = 600.0

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.unit_mode not in ("thread", "process"):
            raise ConfigError(f"unit_mode 只支持 thread / process: {self.unit_mode}")
        if self.default_depth < 1:
            raise ConfigError(f"default_depth 必须 >= 1: {self.default_depth}")

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_FILE) -> Config:
        """从 YAML 文件加载配置，不存在则返回默认；随后应用环境变量覆盖"""
        data = load_yaml(path)
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        for env_key, attr in _ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value:
                matched[attr] = value
        try:
            cfg = cls(**matched)
        except TypeError as e:
            raise ConfigError(f"配置文件内容无效: {path}: {e}") from e
        cfg.extra = extra
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "") -> Config:
    """从文件初始化全局配置，path 为空时依次取 REPOISO_CONFIG 和默认路径"""
    global _current  # noqa: PLW0603
    path = path or os.getenv("REPOISO_CONFIG", "") or DEFAULT_CONFIG_FILE
    _current = Config.from_file(path)
    logger.debug("配置已加载: %s", path)
    return _current

"""服务容器 — 统一依赖注入

CLI 通过 get_container() 获取服务，而非直接 import 构造。

依赖关系（→ 表示依赖）:
  manager    → unit → dispatcher（每次动作新建）
  dispatcher → git / resolver / supervisor

注意 dispatcher 属性只用于 `repoiso unit` 这种"本进程就是执行单元"的场景；
编排侧一律经 manager 提交，保证每个动作都在新单元中执行。
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from repoiso.core.config import Config
    from repoiso.services.dispatcher import ActionDispatcher
    from repoiso.services.repo_manager import RepoManager
    from repoiso.services.unit import ExecutionUnit

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器，各服务首次访问时才构造"""

    def __init__(
        self, config: Config | None = None, *, mode: str = "", config_path: str = "",
    ) -> None:
        self._instances: dict[str, Any] = {}
        self._lock = threading.RLock()
        if config is None:
            from repoiso.core.config import get_config
            config = get_config()
        self._config = config
        self._mode = mode
        self._config_path = config_path

    @property
    def config(self) -> Config:
        return self._config

    def _lazy(self, name: str, build: Callable[[], Any]) -> Any:
        with self._lock:
            if name not in self._instances:
                self._instances[name] = build()
            return self._instances[name]

    @property
    def dispatcher(self) -> ActionDispatcher:
        from repoiso.services.dispatcher import ActionDispatcher
        return self._lazy("dispatcher", lambda: ActionDispatcher(self._config))

    @property
    def unit(self) -> ExecutionUnit:
        from repoiso.services.unit import make_unit
        return self._lazy("unit", lambda: make_unit(
            self._config, self._mode, config_path=self._config_path,
        ))

    @property
    def manager(self) -> RepoManager:
        from repoiso.services.repo_manager import RepoManager
        unit = self.unit
        return self._lazy("manager", lambda: RepoManager(self._config, unit=unit))


# 进程级单例：CLI 入口 init_container，之后各处 get_container

_container: ServiceContainer | None = None
_container_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """返回进程级容器，尚未初始化时按全局配置创建"""
    global _container  # noqa: PLW0603
    with _container_lock:
        if _container is None:
            _container = ServiceContainer()
        return _container


def init_container(config: Config, *, mode: str = "", config_path: str = "") -> ServiceContainer:
    """丢弃旧容器，按 CLI 解析出的配置、执行单元模式重新创建"""
    global _container  # noqa: PLW0603
    container = ServiceContainer(config, mode=mode, config_path=config_path)
    with _container_lock:
        _container = container
    return container


def reset_container() -> None:
    global _container  # noqa: PLW0603
    with _container_lock:
        _container = None

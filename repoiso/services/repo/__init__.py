"""代码仓服务模块

- git.py: 浅克隆 / 拉取 / 状态查询
- workspace.py: 工作空间目录与 repoId 锁
"""

from repoiso.services.repo.git import GitOperator
from repoiso.services.repo.workspace import WorkspaceManager

__all__ = [
    "GitOperator",
    "WorkspaceManager",
]

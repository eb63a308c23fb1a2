"""repoiso - 隔离式代码仓生命周期管理"""

__version__ = "0.3.0"

"""统一异常体系

所有业务异常继承 RepoIsoError，每个子类带一个稳定的 code。
ActionDispatcher 在动作边界捕获它们，转换为结构化失败结果 {success: false, error, errorCode}。
"""

from __future__ import annotations


class RepoIsoError(Exception):
    """基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(RepoIsoError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(RepoIsoError):
    """请求参数校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotFoundError(RepoIsoError):
    """工作空间或清单不存在"""

    code = "NOT_FOUND"


class DependenciesMissingError(RepoIsoError):
    """声明了依赖但尚未安装"""

    code = "DEPENDENCIES_MISSING"


class NoRunScriptError(RepoIsoError):
    """找不到可运行的脚本"""

    code = "NO_RUN_SCRIPT"

    def __init__(self, message: str, available: list[str] | None = None) -> None:
        super().__init__(message)
        self.available = available or []


class ToolUnavailableError(RepoIsoError):
    """包管理器不在 PATH 上（由解析器自动回退处理，不对外暴露）"""

    code = "TOOL_UNAVAILABLE"


class ActionTimeoutError(RepoIsoError):
    """外部命令或执行单元超时"""

    code = "TIMEOUT"


class ExternalToolError(RepoIsoError):
    """git / 包管理器 / 子进程非零退出"""

    code = "EXTERNAL_TOOL_FAILURE"

    def __init__(self, message: str, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class WorkspaceBusyError(RepoIsoError):
    """同一 repoId 的另一个动作正持有锁"""

    code = "WORKSPACE_BUSY"

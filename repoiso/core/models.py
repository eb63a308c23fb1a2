"""核心数据模型

动作请求 / 动作结果 / 清单三类实体集中定义。
Python 侧字段使用 snake_case，落盘与结果消息使用 camelCase（与编排进程约定的线格式）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from repoiso.core.exceptions import ValidationError

_SAFE_REPO_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")


def to_camel(name: str) -> str:
    """snake_case -> camelCase"""
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def validate_repo_id(repo_id: str) -> None:
    """repoId 直接作为目录名使用，只允许安全字符，拒绝路径穿越"""
    if not repo_id or not _SAFE_REPO_ID_RE.match(repo_id) or ".." in repo_id:
        raise ValidationError(f"repoId 非法: {repo_id!r}")


def validate_ref(ref: str) -> None:
    if not _SAFE_REF_RE.match(ref) or ref.startswith("-"):
        raise ValidationError(f"branch 包含非法字符: {ref}")


# =========================================================================
# 枚举
# =========================================================================


class Action(str, Enum):
    """生命周期动作（每个成员在 ActionDispatcher 中有且仅有一个处理器）"""
    CLONE = "clone"
    UPDATE = "update"
    UNLOAD = "unload"
    INSTALL = "install"
    STATUS = "status"
    RUN = "run"
    STOP = "stop"


class PackageManager(str, Enum):
    """支持的包管理器"""
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


class RepoStatus(str, Enum):
    """清单中的生命周期阶段"""
    ABSENT = "absent"
    CLONED = "cloned"
    RUNNING = "running"
    STOPPED = "stopped"


# run 子进程 I/O 模式
STDIO_MODES = ("log", "inherit", "ignore")


# =========================================================================
# 动作请求
# =========================================================================


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_int(value: Any, key: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} 必须是整数: {value!r}") from None


@dataclass
class ActionConfig:
    """单次动作的可选参数（线格式见 from_dict）"""

    branch: str = ""
    depth: int | None = None
    package_manager: str = ""
    production: bool = False
    command: str = ""
    script: str = ""
    port: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    detached: bool = False
    background: bool = False
    stdio: str = "log"
    startup_delay: int | None = None  # 毫秒

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ActionConfig:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("config 必须是对象")
        branch = str(data.get("branch") or "")
        if branch:
            validate_ref(branch)

        depth = _as_int(data.get("depth"), "depth")
        if depth is not None and depth < 1:
            raise ValidationError(f"depth 必须 >= 1: {depth}")

        pm = str(data.get("packageManager") or "")
        if pm and pm not in {m.value for m in PackageManager}:
            raise ValidationError(f"不支持的包管理器: {pm}")

        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise ValidationError("env 必须是对象")

        stdio = str(data.get("stdio") or "log")
        if stdio == "pipe":
            # 调用方无人读取管道，落到日志文件避免子进程写满管道后阻塞
            stdio = "log"
        if stdio not in STDIO_MODES:
            raise ValidationError(f"stdio 只支持 {', '.join(STDIO_MODES)}: {stdio}")

        return cls(
            branch=branch,
            depth=depth,
            package_manager=pm,
            production=_as_bool(data.get("production", False)),
            command=str(data.get("command") or ""),
            script=str(data.get("script") or ""),
            port=_as_int(data.get("port"), "port"),
            env={str(k): str(v) for k, v in env.items()},
            detached=_as_bool(data.get("detached", False)),
            background=_as_bool(data.get("background", False)),
            stdio=stdio,
            startup_delay=_as_int(data.get("startupDelay"), "startupDelay"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {to_camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class ActionRequest:
    """编排进程提交给执行单元的单动作请求"""

    action: Action
    repo_id: str
    workspace_dir: str = ""
    repo_url: str = ""
    config: ActionConfig = field(default_factory=ActionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionRequest:
        """解析线格式 {action, repoId, repoUrl?, workspaceDir, config}"""
        raw_action = str(data.get("action") or "")
        try:
            action = Action(raw_action)
        except ValueError:
            raise ValidationError(f"未知动作: {raw_action!r}") from None
        repo_id = str(data.get("repoId") or "")
        validate_repo_id(repo_id)
        return cls(
            action=action,
            repo_id=repo_id,
            workspace_dir=str(data.get("workspaceDir") or ""),
            repo_url=str(data.get("repoUrl") or ""),
            config=ActionConfig.from_dict(data.get("config")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "repoId": self.repo_id,
            "repoUrl": self.repo_url,
            "workspaceDir": self.workspace_dir,
            "config": self.config.to_dict(),
        }


# =========================================================================
# 动作结果
# =========================================================================


@dataclass
class ActionResult:
    """执行单元上报的唯一结果消息"""

    success: bool
    action: str
    repo_id: str
    message: str = ""
    error: str = ""
    error_code: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, action: Action, repo_id: str, message: str, **payload: Any) -> ActionResult:
        return cls(success=True, action=action.value, repo_id=repo_id,
                   message=message, payload=payload)

    @classmethod
    def fail(
        cls, action: str, repo_id: str, error: str,
        code: str = "UNKNOWN", **payload: Any,
    ) -> ActionResult:
        return cls(success=False, action=action, repo_id=repo_id,
                   error=error, error_code=code, payload=payload)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success, "action": self.action, "repoId": self.repo_id,
        }
        out.update(self.payload)
        if self.success:
            out["message"] = self.message
        else:
            out["error"] = self.error
            out["errorCode"] = self.error_code
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionResult:
        reserved = {"success", "action", "repoId", "message", "error", "errorCode"}
        return cls(
            success=bool(data.get("success")),
            action=str(data.get("action", "")),
            repo_id=str(data.get("repoId", "")),
            message=str(data.get("message", "")),
            error=str(data.get("error", "")),
            error_code=str(data.get("errorCode", "")),
            payload={k: v for k, v in data.items() if k not in reserved},
        )


# =========================================================================
# 清单
# =========================================================================


@dataclass
class Manifest:
    """工作空间清单 — 跨无状态调用的唯一持久状态

    status 为 None 表示刚 clone、尚未运行过（见 phase）。
    """

    repo_id: str
    repo_url: str = ""
    cloned_at: str = ""
    last_updated: str | None = None
    branch: str = "main"
    depth: int = 1
    isolated: bool = True
    authenticated: bool = False
    package_manager: str = PackageManager.NPM.value
    framework: str = "unknown"
    node_version: str | None = None
    status: str | None = None
    process_id: int | None = None
    command: str | None = None
    port: int | None = None
    last_started: str | None = None
    last_stopped: str | None = None
    last_installed: str | None = None
    exit_code: int | None = None
    exit_signal: str | None = None
    log_file: str | None = None
    # 磁盘上存在但本模型不认识的键，重写时原样保留
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def phase(self) -> RepoStatus:
        if self.status is None:
            return RepoStatus.CLONED
        return RepoStatus(self.status)

    @property
    def is_running(self) -> bool:
        return self.status == RepoStatus.RUNNING.value and self.process_id is not None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            out[to_camel(f.name)] = getattr(self, f.name)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        by_key = {to_camel(f.name): f.name for f in fields(cls) if f.name != "extra"}
        kwargs: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in by_key:
                kwargs[by_key[key]] = value
            else:
                extra[key] = value
        kwargs.setdefault("repo_id", "")
        status = kwargs.get("status")
        if status is not None and status not in {s.value for s in RepoStatus}:
            # 旧版本写入的未知状态按未运行处理
            extra["legacyStatus"] = status
            kwargs["status"] = None
        return cls(extra=extra, **kwargs)

"""git / 包管理器等短命外部命令的执行入口

长驻的 run 子进程不走这里，由 ProcessSupervisor 直接 Popen。
执行器可替换：测试注入假执行器，不需要 patch subprocess。
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Protocol

from repoiso.core.exceptions import ActionTimeoutError, ExternalToolError

logger = logging.getLogger(__name__)

# 失败消息只带输出末尾这么多字符，完整输出放在异常的 output 上
_OUTPUT_TAIL = 500


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout 与 stderr 拼接（git / npm 的进度和错误常混在 stderr）"""
        return (self.stdout + self.stderr).strip()


class CommandExecutor(Protocol):
    """外部命令执行器

    约定: 可执行文件找不到时抛 FileNotFoundError，超时抛 subprocess.TimeoutExpired，
    非零退出码照常返回 CommandResult 而不抛异常。
    """

    def execute(
        self,
        cmd: list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        ...


class LocalExecutor:
    """直接 exec argv，不经过 shell；stdin 接 /dev/null，防止 git 等工具等待交互输入"""

    def execute(
        self,
        cmd: list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        completed = subprocess.run(
            cmd, cwd=cwd, env=env, timeout=timeout, check=False,
            stdin=subprocess.DEVNULL, capture_output=True, text=True,
        )
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)


_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    return _executor


def set_executor(executor: CommandExecutor) -> None:
    """替换进程级默认执行器"""
    global _executor  # noqa: PLW0603
    _executor = executor


def run_cmd(
    cmd: list[str], *, cwd: str = ".",
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    label: str = "cmd",
    executor: CommandExecutor | None = None,
    redact: str = "",
) -> CommandResult:
    """执行一条命令，成功返回结果，否则转成 repoiso 异常

    - 非零退出 -> ExternalToolError（带 returncode 与脱敏后的输出）
    - 可执行文件不存在 -> ExternalToolError
    - 超时 -> ActionTimeoutError

    redact 非空时，日志和异常消息里出现的该串一律替换为 ***。
    克隆带凭据的 URL 时用它挡住 token。
    """
    shown = _mask(" ".join(cmd), redact)
    logger.info("  %s: %s (cwd=%s)", label, shown, cwd)
    try:
        result = (executor or _executor).execute(cmd, cwd=cwd, env=env, timeout=timeout)
    except FileNotFoundError as e:
        raise ExternalToolError(f"{label}失败: 命令不存在 {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise ActionTimeoutError(f"{label}超时 ({timeout}s): {shown}") from e

    if result.success:
        return result
    output = _mask(result.output, redact)
    raise ExternalToolError(
        f"{label}失败 (rc={result.returncode}): {output[-_OUTPUT_TAIL:]}",
        returncode=result.returncode, output=output,
    )


def _mask(text: str, secret: str) -> str:
    return text.replace(secret, "***") if secret else text

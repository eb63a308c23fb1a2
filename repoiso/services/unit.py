"""执行单元 — 每个动作在一个全新的隔离单元中执行

- ThreadUnit: 新线程 + 新 ActionDispatcher，结果经 queue.Queue 回传
- ProcessUnit: 新子进程 `python -m repoiso unit`，stdin 写一行请求，stdout 读一行结果

单元之间不共享任何内存状态；跨调用的状态只存在于清单和 OS 进程里。
调用方等待结果的时间有上限，超时报 TIMEOUT（线程无法被强杀，只能放弃等待）。
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import sys
import threading
from collections.abc import Callable
from typing import IO, Protocol, cast

from repoiso.core.config import Config
from repoiso.core.models import ActionRequest, ActionResult
from repoiso.services.dispatcher import ActionDispatcher

logger = logging.getLogger(__name__)

DispatcherFactory = Callable[[], ActionDispatcher]


def _timeout_result(request: ActionRequest, timeout: float) -> ActionResult:
    return ActionResult.fail(
        request.action.value, request.repo_id,
        f"执行单元在 {timeout:g}s 内未返回结果", code="TIMEOUT",
    )


class ExecutionUnit(Protocol):
    """执行单元协议：提交一个请求，得到恰好一个结果"""

    def submit(self, request: ActionRequest) -> ActionResult: ...

    def wait_pending(self, timeout: float | None = None) -> None: ...


class ThreadUnit:
    """线程式执行单元

    监视线程和 SIGKILL 定时器挂在各动作的 dispatcher 上，与调用方同进程。
    调用方退出前必须 wait_pending，否则这些守护线程随进程一起消失。
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        timeout: float | None = None,
        factory: DispatcherFactory | None = None,
    ) -> None:
        if config is None:
            from repoiso.core.config import get_config
            config = get_config()
        self.config = config
        self.timeout = timeout if timeout is not None else config.unit_timeout
        self._factory = factory or (lambda: ActionDispatcher(self.config))
        self._dispatchers: list[ActionDispatcher] = []
        self._dispatchers_lock = threading.Lock()

    def submit(self, request: ActionRequest) -> ActionResult:
        results: queue.Queue[ActionResult] = queue.Queue(maxsize=1)

        def _work() -> None:
            try:
                dispatcher = self._factory()
                with self._dispatchers_lock:
                    self._dispatchers.append(dispatcher)
                results.put(dispatcher.dispatch(request))
            except Exception as e:  # noqa: BLE001
                # 分派器构造失败同样要产出一个结果
                logger.exception("执行单元异常: %s %s", request.action.value, request.repo_id)
                results.put(ActionResult.fail(
                    request.action.value, request.repo_id, f"{type(e).__name__}: {e}",
                ))

        t = threading.Thread(
            target=_work, name=f"unit-{request.action.value}-{request.repo_id}", daemon=True,
        )
        t.start()
        try:
            return results.get(timeout=self.timeout)
        except queue.Empty:
            logger.error("执行单元超时: %s %s", request.action.value, request.repo_id)
            return _timeout_result(request, self.timeout)

    def wait_pending(self, timeout: float | None = None) -> None:
        """等待本单元启动过的所有监视线程与宽限期定时器"""
        with self._dispatchers_lock:
            dispatchers = list(self._dispatchers)
        for d in dispatchers:
            d.supervisor.wait_pending(timeout)


class ProcessUnit:
    """进程式执行单元

    单元进程回报结果后还会等待监视线程和宽限期定时器结束，
    因此这里只读取第一行结果，进程由后台线程回收。
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        timeout: float | None = None,
        config_path: str = "",
        python: str = "",
    ) -> None:
        if config is None:
            from repoiso.core.config import get_config
            config = get_config()
        self.config = config
        self.timeout = timeout if timeout is not None else config.unit_timeout
        self.config_path = config_path
        self.python = python or sys.executable

    def command(self) -> list[str]:
        return [self.python, "-m", "repoiso", "unit"]

    def _env(self, request: ActionRequest) -> dict[str, str]:
        env = dict(os.environ)
        if self.config_path:
            env["REPOISO_CONFIG"] = self.config_path
        if request.workspace_dir:
            env["REPOISO_WORKSPACE_DIR"] = request.workspace_dir
        return env

    def submit(self, request: ActionRequest) -> ActionResult:
        try:
            proc = subprocess.Popen(
                self.command(),
                stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                env=self._env(request), text=True,
            )
        except OSError as e:
            return ActionResult.fail(
                request.action.value, request.repo_id, f"执行单元启动失败: {e}",
            )

        # PIPE 保证两端非空
        stdin, stdout = cast(IO[str], proc.stdin), cast(IO[str], proc.stdout)
        try:
            stdin.write(json.dumps(request.to_dict(), ensure_ascii=False) + "\n")
            stdin.close()
        except OSError as e:
            logger.warning("写入执行单元请求失败: %s", e)

        lines: queue.Queue[str] = queue.Queue(maxsize=1)
        reader = threading.Thread(
            target=lambda: lines.put(stdout.readline()),
            name=f"unit-reader-{proc.pid}", daemon=True,
        )
        reader.start()
        try:
            line = lines.get(timeout=self.timeout)
        except queue.Empty:
            logger.error("执行单元超时，终止 pid=%d: %s %s",
                         proc.pid, request.action.value, request.repo_id)
            proc.kill()
            proc.wait()
            return _timeout_result(request, self.timeout)

        self._reap(proc)

        if not line.strip():
            return ActionResult.fail(
                request.action.value, request.repo_id,
                "执行单元未产出结果即退出", code="UNKNOWN",
            )
        try:
            data = json.loads(line)
        except ValueError:
            return ActionResult.fail(
                request.action.value, request.repo_id,
                f"执行单元输出无法解析: {line.strip()[:200]}",
            )
        if not isinstance(data, dict):
            return ActionResult.fail(
                request.action.value, request.repo_id, "执行单元输出不是 JSON 对象",
            )
        return ActionResult.from_dict(data)

    def wait_pending(self, timeout: float | None = None) -> None:
        """单元进程自己等待后台线程，调用方无需等待"""

    @staticmethod
    def _reap(proc: subprocess.Popen[str]) -> None:
        def _wait() -> None:
            if proc.stdout is not None:
                proc.stdout.close()
            rc = proc.wait()
            logger.debug("执行单元退出: pid=%d rc=%s", proc.pid, rc)

        threading.Thread(target=_wait, name=f"unit-reap-{proc.pid}", daemon=True).start()


def make_unit(config: Config, mode: str = "", *, config_path: str = "") -> ExecutionUnit:
    """按 mode（thread / process，空则取 config.unit_mode）构造执行单元"""
    mode = mode or config.unit_mode
    if mode == "process":
        return ProcessUnit(config, config_path=config_path)
    return ThreadUnit(config)

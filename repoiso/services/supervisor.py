"""进程监管 — run / stop

职责:
- 解析运行脚本并以子进程方式启动代码仓
- 启动时把 pid 写进清单；之后任何一次调用都只凭清单里的 pid 找回并终止它
- 每个子进程挂一个退出监视线程，进程退出时把清单改回 stopped

监视线程是启动它的执行单元持有的唯一内存状态。后来的 stop 由别的执行单元发起，
不能依赖它，只能对清单里的 pid 发信号。
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Any, cast

from repoiso.core.exceptions import (
    DependenciesMissingError,
    ExternalToolError,
    NoRunScriptError,
    ValidationError,
)
from repoiso.core.manifest import ManifestStore, utc_now
from repoiso.core.models import ActionConfig, Manifest, RepoStatus
from repoiso.services.packages import (
    PackageManagerResolver,
    declared_scripts,
    declares_dependencies,
    has_installed_dependencies,
    read_package_json,
)

logger = logging.getLogger(__name__)

# 未显式指定脚本时依次尝试
FALLBACK_SCRIPTS = ("start", "dev", "serve")


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Popen.returncode -> (exitCode, exitSignal)；被信号杀死时 returncode 为负"""
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


def is_alive(pid: int | None) -> bool:
    """kill(pid, 0) 探活，不发送任何信号"""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessSupervisor:
    """子进程监管器"""

    def __init__(
        self,
        manifests: ManifestStore | None = None,
        resolver: PackageManagerResolver | None = None,
        *,
        startup_delay_ms: int = 3000,
        stop_grace_seconds: float = 5.0,
        run_log_name: str = ".isolation-run.log",
    ) -> None:
        self.manifests = manifests or ManifestStore()
        self.resolver = resolver or PackageManagerResolver()
        self.startup_delay_ms = startup_delay_ms
        self.stop_grace_seconds = stop_grace_seconds
        self.run_log_name = run_log_name
        self._pending: list[threading.Thread] = []
        self._pending_lock = threading.Lock()

    # =====================================================================
    # run
    # =====================================================================

    @staticmethod
    def resolve_script(pkg: dict[str, Any] | None, config: ActionConfig) -> str:
        """显式脚本（须已声明）> start > dev > serve"""
        scripts = declared_scripts(pkg)
        requested = config.script or config.command
        if requested and requested in scripts:
            return requested
        if requested:
            logger.info("请求的脚本 %s 未声明，按默认顺序选择", requested)
        for name in FALLBACK_SCRIPTS:
            if name in scripts:
                return name
        available = sorted(scripts)
        raise NoRunScriptError(
            f"找不到可运行的脚本，已声明: {', '.join(available) or '(无)'}",
            available=available,
        )

    def run(self, repo_path: Path, repo_id: str, config: ActionConfig) -> dict[str, Any]:
        """启动代码仓，返回 {processId, manifest}

        前台探测模式下等待 startupDelay：期间非零退出视为启动失败。
        """
        manifest = self.manifests.require(repo_path, repo_id)
        if manifest.is_running and is_alive(manifest.process_id):
            raise ValidationError(
                f"代码仓 {repo_id} 已在运行 (PID: {manifest.process_id})，请先 stop",
            )

        pkg = read_package_json(repo_path)
        if declares_dependencies(pkg) and not has_installed_dependencies(repo_path):
            raise DependenciesMissingError(f"代码仓 {repo_id} 依赖未安装，请先执行 install")

        script = self.resolve_script(pkg, config)

        env = {**os.environ, **config.env}
        if config.port:
            env["PORT"] = str(config.port)

        pm = self.resolver.resolve(
            config.package_manager or manifest.package_manager, repo_path, env,
        )
        cmd = self.resolver.run_command(pm, script)
        command = " ".join(cmd)

        proc, log_path = self._spawn(cmd, repo_path, env, config)
        logger.info("已启动: %s (pid=%d, cmd=%s)", repo_id, proc.pid, command,
                    extra={"repo_id": repo_id, "pid": proc.pid})

        manifest.status = RepoStatus.RUNNING.value
        manifest.process_id = proc.pid
        manifest.command = command
        manifest.port = config.port
        manifest.last_started = utc_now()
        manifest.exit_code = None
        manifest.exit_signal = None
        manifest.log_file = str(log_path) if log_path else None
        self.manifests.save(repo_path, manifest)

        exited = self._watch(proc, repo_path, repo_id)

        if config.background:
            return {"processId": proc.pid, "manifest": manifest.to_dict()}

        delay_ms = config.startup_delay if config.startup_delay is not None \
            else self.startup_delay_ms
        exited.wait(max(delay_ms, 0) / 1000)
        if exited.is_set() and proc.returncode != 0:
            code, sig = split_returncode(proc.returncode)
            raise ExternalToolError(
                f"进程在启动探测期内退出 (code={code}, signal={sig})",
                returncode=code,
            )
        current = self.manifests.load(repo_path) or manifest
        return {"processId": proc.pid, "manifest": current.to_dict()}

    def _spawn(
        self, cmd: list[str], repo_path: Path, env: dict[str, str], config: ActionConfig,
    ) -> tuple[subprocess.Popen[bytes], Path | None]:
        log_path: Path | None = None
        if config.stdio == "inherit":
            out: Any = None
            err: Any = None
        elif config.stdio == "ignore":
            out = err = subprocess.DEVNULL
        else:
            log_path = repo_path / self.run_log_name
            out = open(log_path, "ab", buffering=0)  # noqa: SIM115
            err = subprocess.STDOUT

        try:
            proc = subprocess.Popen(
                cmd, cwd=str(repo_path), env=env,
                stdin=subprocess.DEVNULL, stdout=out, stderr=err,
                start_new_session=config.detached,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(f"启动失败: 命令不存在 {cmd[0]}") from e
        finally:
            # 子进程持有自己的 fd，这里关闭父进程侧句柄
            if log_path is not None:
                out.close()
        return proc, log_path

    def _watch(self, proc: subprocess.Popen[bytes], repo_path: Path, repo_id: str) -> threading.Event:
        """挂退出监视线程，返回进程退出后置位的 Event（清单写完后才置位）"""
        exited = threading.Event()

        def _wait() -> None:
            try:
                proc.wait()
                self._on_exit(repo_path, repo_id, proc.pid, proc.returncode)
            finally:
                exited.set()

        t = threading.Thread(target=_wait, name=f"watch-{repo_id}-{proc.pid}", daemon=True)
        t.start()
        self._track(t)
        return exited

    def _on_exit(self, repo_path: Path, repo_id: str, pid: int, returncode: int | None) -> None:
        code, sig = split_returncode(returncode)
        logger.info("进程退出: %s (pid=%d, code=%s, signal=%s)", repo_id, pid, code, sig,
                    extra={"repo_id": repo_id, "pid": pid})
        if not repo_path.is_dir():
            logger.debug("工作空间已删除，跳过清单回写: %s", repo_id)
            return
        manifest = self.manifests.load(repo_path)
        if manifest is None:
            return
        already_stopped = manifest.process_id is None \
            and manifest.status == RepoStatus.STOPPED.value
        if manifest.process_id != pid and not already_stopped:
            # 清单已属于之后启动的新进程，或已被重新 clone
            logger.debug("清单 pid=%s 不是 %d，跳过回写", manifest.process_id, pid)
            return
        manifest.status = RepoStatus.STOPPED.value
        manifest.process_id = None
        manifest.exit_code = code
        manifest.exit_signal = sig
        if not (already_stopped and manifest.last_stopped):
            manifest.last_stopped = utc_now()
        try:
            self.manifests.save(repo_path, manifest)
        except OSError as e:
            # unload 与退出回写并发时目录可能刚被删除
            logger.warning("退出状态回写失败 %s: %s", repo_id, e)

    # =====================================================================
    # stop
    # =====================================================================

    def stop(self, repo_path: Path, repo_id: str) -> tuple[Manifest | None, bool]:
        """按清单中的 pid 停止进程，返回 (清单, 是否真的发出了信号)

        未运行或没有清单时不发任何信号。清单立即乐观地改为 stopped，不等进程确认退出。
        """
        manifest = self.manifests.load(repo_path) if repo_path.is_dir() else None
        if manifest is None or not manifest.is_running:
            return manifest, False

        # is_running 保证 pid 非空
        pid = cast(int, manifest.process_id)
        self.terminate(pid)

        manifest.status = RepoStatus.STOPPED.value
        manifest.process_id = None
        manifest.last_stopped = utc_now()
        self.manifests.save(repo_path, manifest)
        logger.info("已停止: %s (pid=%d)", repo_id, pid, extra={"repo_id": repo_id, "pid": pid})
        return manifest, True

    def terminate(self, pid: int) -> None:
        """SIGTERM，宽限期后 SIGKILL；进程已不存在时静默"""
        self._signal(pid, signal.SIGTERM)
        timer = threading.Timer(self.stop_grace_seconds, self._signal, args=(pid, signal.SIGKILL))
        timer.daemon = True
        timer.name = f"kill-{pid}"
        timer.start()
        self._track(timer)

    @staticmethod
    def _signal(pid: int, sig: signal.Signals) -> None:
        try:
            # 进程是自己进程组的组长（detached 启动）时连同整组一起发
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            logger.debug("进程 %d 已不存在 (%s)", pid, sig.name)

    # =====================================================================
    # 后台线程
    # =====================================================================

    def _track(self, t: threading.Thread) -> None:
        with self._pending_lock:
            self._pending = [p for p in self._pending if p.is_alive()]
            self._pending.append(t)

    def wait_pending(self, timeout: float | None = None) -> None:
        """等待所有监视线程与宽限期定时器结束（进程式执行单元退出前调用）"""
        with self._pending_lock:
            pending = list(self._pending)
        for t in pending:
            t.join(timeout)

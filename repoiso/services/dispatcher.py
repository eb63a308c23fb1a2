"""动作分派器 — 执行单元内的唯一入口

一次调用只执行一个动作，并且恰好产出一个结构化结果：
  {success: true, action, repoId, ..., message}
  {success: false, action, repoId, error, errorCode}

任何异常都在这里被转换为失败结果，不会以未结构化的形式逃逸给调用方。
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from repoiso.core.config import Config
from repoiso.core.exceptions import (
    ExternalToolError,
    NoRunScriptError,
    NotFoundError,
    RepoIsoError,
)
from repoiso.core.manifest import ManifestStore, utc_now
from repoiso.core.models import Action, ActionRequest, ActionResult, Manifest
from repoiso.services.packages import (
    PACKAGE_JSON,
    PackageManagerResolver,
    has_installed_dependencies,
)
from repoiso.services.repo.git import GitOperator
from repoiso.services.repo.workspace import WorkspaceManager
from repoiso.services.supervisor import ProcessSupervisor, is_alive
from repoiso.utils.logger import ActionLogger
from repoiso.utils.net import validate_repo_url

logger = logging.getLogger(__name__)

Handler = Callable[[ActionRequest, WorkspaceManager], ActionResult]

# 只读动作，不取 repoId 锁
_LOCK_FREE = frozenset({Action.STATUS})


class ActionDispatcher:
    """单动作分派器"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        git: GitOperator | None = None,
        resolver: PackageManagerResolver | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        if config is None:
            from repoiso.core.config import get_config
            config = get_config()
        self.config = config
        self.manifests = ManifestStore(config.manifest_name)
        self.git = git or GitOperator(
            token_env=config.token_env,
            auth_hosts=config.auth_hosts,
            clone_timeout=config.clone_timeout,
            update_timeout=config.update_timeout,
            query_timeout=config.git_query_timeout,
        )
        self.resolver = resolver or PackageManagerResolver(install_timeout=config.install_timeout)
        self.supervisor = supervisor or ProcessSupervisor(
            self.manifests, self.resolver,
            startup_delay_ms=config.startup_delay_ms,
            stop_grace_seconds=config.stop_grace_seconds,
            run_log_name=config.run_log_name,
        )
        self._handlers: dict[Action, Handler] = {
            Action.CLONE: self._clone,
            Action.UPDATE: self._update,
            Action.UNLOAD: self._unload,
            Action.INSTALL: self._install,
            Action.STATUS: self._status,
            Action.RUN: self._run,
            Action.STOP: self._stop,
        }
        missing = set(Action) - set(self._handlers)
        if missing:
            raise RuntimeError(f"动作缺少处理器: {sorted(a.value for a in missing)}")

    def workspace(self, workspace_dir: str = "") -> WorkspaceManager:
        return WorkspaceManager(
            workspace_dir or self.config.workspace_dir,
            manifests=self.manifests,
            lock_dir_name=self.config.lock_dir_name,
        )

    # =====================================================================
    # 入口
    # =====================================================================

    def dispatch_raw(self, data: Any) -> ActionResult:
        """解析线格式请求后分派；请求本身非法时同样返回结构化失败"""
        if not isinstance(data, dict):
            return ActionResult.fail("", "", "请求必须是 JSON 对象", code="VALIDATION_ERROR")
        try:
            request = ActionRequest.from_dict(data)
        except RepoIsoError as e:
            return ActionResult.fail(
                str(data.get("action") or ""), str(data.get("repoId") or ""),
                str(e), code=e.code,
            )
        return self.dispatch(request)

    def dispatch(self, request: ActionRequest) -> ActionResult:
        """执行一个动作并返回唯一结果（从不抛异常）"""
        action, repo_id = request.action, request.repo_id
        log = ActionLogger(logger, repo_id, action.value)
        log.info("动作开始: %s %s", action.value, repo_id)
        try:
            ws = self.workspace(request.workspace_dir)
            handler = self._handlers[action]
            if self.config.lock_actions and action not in _LOCK_FREE:
                with ws.lock(repo_id, self.config.lock_timeout):
                    result = handler(request, ws)
            else:
                result = handler(request, ws)
        except NoRunScriptError as e:
            result = ActionResult.fail(action.value, repo_id, str(e), code=e.code,
                                       availableScripts=e.available)
        except ExternalToolError as e:
            extra: dict[str, Any] = {}
            if e.returncode is not None:
                extra["exitCode"] = e.returncode
            result = ActionResult.fail(action.value, repo_id, str(e), code=e.code, **extra)
        except RepoIsoError as e:
            result = ActionResult.fail(action.value, repo_id, str(e), code=e.code)
        except Exception as e:  # noqa: BLE001
            log.exception("动作异常: %s %s", action.value, repo_id)
            result = ActionResult.fail(action.value, repo_id, f"{type(e).__name__}: {e}")

        if result.success:
            log.info("动作完成: %s %s", action.value, repo_id)
        else:
            log.warning("动作失败: %s %s [%s] %s", action.value, repo_id,
                        result.error_code, result.error)
        return result

    # =====================================================================
    # 处理器
    # =====================================================================

    def _require(self, ws: WorkspaceManager, repo_id: str) -> Path:
        if not ws.exists(repo_id):
            raise NotFoundError(f"代码仓 {repo_id} 不存在")
        return ws.path(repo_id)

    def _clone(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        validate_repo_url(req.repo_url)
        ws.ensure_root()
        repo_path = ws.path(req.repo_id)

        if repo_path.exists():
            # 重新克隆前先停掉旧实例，避免删目录后留下孤儿进程
            old = self.manifests.load(repo_path) if repo_path.is_dir() else None
            if old is not None and old.is_running and old.process_id:
                self.supervisor.terminate(old.process_id)
            ws.remove(req.repo_id)

        cfg = req.config
        branch = cfg.branch or self.config.default_branch
        depth = cfg.depth or self.config.default_depth
        authenticated = self.git.clone(req.repo_url, repo_path, branch=branch, depth=depth)
        self.git.exclude_local(repo_path, [
            self.config.manifest_name, self.config.run_log_name,
            ".npm-cache/", ".yarn-cache/", ".pnpm-store/",
        ])

        manifest = Manifest(
            repo_id=req.repo_id,
            repo_url=req.repo_url,
            cloned_at=utc_now(),
            branch=branch,
            depth=depth,
            authenticated=authenticated,
            package_manager=self.resolver.detect(repo_path).value,
            framework=self.resolver.detect_framework(repo_path),
            node_version=self.resolver.node_version(),
        )
        self.manifests.save(repo_path, manifest)
        return ActionResult.ok(
            Action.CLONE, req.repo_id, f"代码仓 {req.repo_id} 克隆完成",
            manifest=manifest.to_dict(),
        )

    def _update(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        repo_path = self._require(ws, req.repo_id)
        manifest = self.manifests.load(repo_path)
        self.git.pull(
            repo_path,
            url=manifest.repo_url if manifest else "",
            branch=manifest.branch if manifest else "",
        )
        payload: dict[str, Any] = {}
        if manifest is not None:
            manifest.last_updated = utc_now()
            self.manifests.save(repo_path, manifest)
            payload["manifest"] = manifest.to_dict()
        return ActionResult.ok(Action.UPDATE, req.repo_id, f"代码仓 {req.repo_id} 已更新", **payload)

    def _unload(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        if not ws.path(req.repo_id).exists():
            return ActionResult.ok(Action.UNLOAD, req.repo_id,
                                   f"代码仓 {req.repo_id} 未加载，无需卸载", removed=False)
        repo_path = ws.path(req.repo_id)
        manifest = self.manifests.load(repo_path) if repo_path.is_dir() else None
        stopped_pid = None
        if manifest is not None and manifest.is_running and manifest.process_id:
            stopped_pid = manifest.process_id
            self.supervisor.terminate(stopped_pid)
        ws.remove(req.repo_id)
        return ActionResult.ok(
            Action.UNLOAD, req.repo_id, f"代码仓 {req.repo_id} 已卸载",
            removed=True, stoppedProcessId=stopped_pid,
        )

    def _install(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        repo_path = self._require(ws, req.repo_id)
        pm = self.resolver.install(
            repo_path, req.config.package_manager, req.config.production,
        )
        payload: dict[str, Any] = {"packageManager": pm.value}
        manifest = self.manifests.load(repo_path)
        if manifest is not None:
            manifest.package_manager = pm.value
            manifest.last_installed = utc_now()
            self.manifests.save(repo_path, manifest)
            payload["manifest"] = manifest.to_dict()
        return ActionResult.ok(
            Action.INSTALL, req.repo_id,
            f"代码仓 {req.repo_id} 依赖安装完成 (使用 {pm.value})", **payload,
        )

    def _status(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        repo_path = self._require(ws, req.repo_id)
        manifest = self.manifests.load(repo_path)
        snapshot: dict[str, Any] = {"path": str(repo_path)}
        snapshot.update(self.git.describe(repo_path))
        snapshot.update({
            "hasNodeModules": has_installed_dependencies(repo_path),
            "packageJsonExists": (repo_path / PACKAGE_JSON).is_file(),
            "manifest": manifest.to_dict() if manifest else None,
            "phase": manifest.phase.value if manifest else None,
            "processAlive": is_alive(manifest.process_id) if manifest else False,
            "isolated": True,
        })
        return ActionResult.ok(Action.STATUS, req.repo_id,
                               f"代码仓 {req.repo_id} 状态已获取", status=snapshot)

    def _run(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        repo_path = self._require(ws, req.repo_id)
        payload = self.supervisor.run(repo_path, req.repo_id, req.config)
        mode = "后台" if req.config.background else "前台"
        return ActionResult.ok(
            Action.RUN, req.repo_id,
            f"代码仓 {req.repo_id} 已{mode}启动 (PID: {payload['processId']})", **payload,
        )

    def _stop(self, req: ActionRequest, ws: WorkspaceManager) -> ActionResult:
        manifest, signalled = self.supervisor.stop(ws.path(req.repo_id), req.repo_id)
        payload: dict[str, Any] = {"manifest": manifest.to_dict()} if manifest else {}
        if not signalled:
            return ActionResult.ok(Action.STOP, req.repo_id,
                                   f"代码仓 {req.repo_id} 未在运行", **payload)
        return ActionResult.ok(Action.STOP, req.repo_id, f"代码仓 {req.repo_id} 已停止", **payload)

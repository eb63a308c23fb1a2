"""ProcessSupervisor 单元测试

run 走真实 Popen；npm 被 PATH 上的 sh 脚本替代。
"""

from __future__ import annotations

import json
import subprocess

import pytest

from repoiso.core.exceptions import (
    DependenciesMissingError,
    ExternalToolError,
    NoRunScriptError,
    ValidationError,
)
from repoiso.core.manifest import ManifestStore
from repoiso.core.models import ActionConfig, Manifest
from repoiso.services.supervisor import ProcessSupervisor, is_alive, split_returncode


@pytest.fixture()
def store():
    return ManifestStore()


@pytest.fixture()
def supervisor(store):
    sup = ProcessSupervisor(store, startup_delay_ms=200, stop_grace_seconds=0.5)
    yield sup
    sup.wait_pending(10)


@pytest.fixture()
def repo(tmp_path, store):
    path = tmp_path / "ws" / "r1"
    path.mkdir(parents=True)
    (path / "package.json").write_text(
        json.dumps({"name": "demo", "scripts": {"start": "node server.js"}}), encoding="utf-8",
    )
    store.save(path, Manifest(repo_id="r1"))
    return path


class TestHelpers:
    def test_split_returncode(self):
        assert split_returncode(None) == (None, None)
        assert split_returncode(0) == (0, None)
        assert split_returncode(3) == (3, None)
        assert split_returncode(-15) == (None, "SIGTERM")

    def test_is_alive(self):
        assert not is_alive(None)
        assert not is_alive(0)
        proc = subprocess.Popen(["true"])
        proc.wait()
        assert not is_alive(proc.pid)

    def test_resolve_script_order(self):
        pkg = {"scripts": {"serve": "x", "dev": "y"}}
        assert ProcessSupervisor.resolve_script(pkg, ActionConfig()) == "dev"
        assert ProcessSupervisor.resolve_script(pkg, ActionConfig(script="serve")) == "serve"
        # 请求的脚本未声明时回落到默认顺序
        assert ProcessSupervisor.resolve_script(pkg, ActionConfig(script="missing")) == "dev"

    def test_resolve_script_none(self):
        with pytest.raises(NoRunScriptError) as exc:
            ProcessSupervisor.resolve_script({"scripts": {"build": "tsc", "lint": "x"}}, ActionConfig())
        assert exc.value.available == ["build", "lint"]


class TestRunPreconditions:
    def test_requires_manifest(self, supervisor, tmp_path):
        from repoiso.core.exceptions import NotFoundError
        bare = tmp_path / "bare"
        bare.mkdir()
        with pytest.raises(NotFoundError):
            supervisor.run(bare, "bare", ActionConfig())

    def test_dependencies_missing(self, supervisor, repo):
        (repo / "package.json").write_text(json.dumps({
            "scripts": {"start": "node ."}, "dependencies": {"express": "4"},
        }), encoding="utf-8")
        with pytest.raises(DependenciesMissingError, match="install"):
            supervisor.run(repo, "r1", ActionConfig())

    def test_no_run_script(self, supervisor, repo):
        (repo / "package.json").write_text(json.dumps({"scripts": {"build": "tsc"}}), encoding="utf-8")
        with pytest.raises(NoRunScriptError) as exc:
            supervisor.run(repo, "r1", ActionConfig())
        assert exc.value.available == ["build"]


class TestRunLifecycle:
    def test_foreground_then_stop(self, supervisor, store, repo, make_tool):
        make_tool("npm", 'echo "started $2"\nexec sleep 30')
        out = supervisor.run(repo, "r1", ActionConfig(startup_delay=300))
        pid = out["processId"]
        assert out["manifest"]["status"] == "running"
        assert out["manifest"]["command"] == "npm run start"
        assert is_alive(pid)

        manifest, signalled = supervisor.stop(repo, "r1")
        assert signalled is True
        assert manifest.status == "stopped"
        assert manifest.process_id is None

        supervisor.wait_pending(10)
        final = store.load(repo)
        assert final.status == "stopped"
        assert final.process_id is None
        assert final.exit_signal == "SIGTERM"
        assert final.last_stopped == manifest.last_stopped
        assert "started start" in (repo / ".isolation-run.log").read_text(encoding="utf-8")

    def test_exit_reconciliation(self, supervisor, store, repo, make_tool):
        make_tool("npm", "sleep 0.3\nexit 3")
        out = supervisor.run(repo, "r1", ActionConfig(background=True))
        assert store.load(repo).process_id == out["processId"]
        supervisor.wait_pending(10)
        final = store.load(repo)
        assert final.status == "stopped"
        assert final.process_id is None
        assert final.exit_code == 3
        assert final.last_stopped

    def test_startup_failure(self, supervisor, store, repo, make_tool):
        make_tool("npm", "echo boom >&2\nexit 2")
        with pytest.raises(ExternalToolError) as exc:
            supervisor.run(repo, "r1", ActionConfig(startup_delay=5000))
        assert exc.value.returncode == 2
        final = store.load(repo)
        assert final.status == "stopped"
        assert final.exit_code == 2
        assert "boom" in (repo / ".isolation-run.log").read_text(encoding="utf-8")

    def test_clean_exit_within_delay(self, supervisor, repo, make_tool):
        make_tool("npm", 'echo "PORT=$PORT FOO=$FOO"\nexit 0')
        out = supervisor.run(repo, "r1", ActionConfig(
            startup_delay=5000, port=4000, env={"FOO": "bar"},
        ))
        assert out["manifest"]["status"] == "stopped"
        assert out["manifest"]["exitCode"] == 0
        assert out["manifest"]["port"] == 4000
        assert "PORT=4000 FOO=bar" in (repo / ".isolation-run.log").read_text(encoding="utf-8")

    def test_already_running_rejected(self, supervisor, repo, make_tool):
        make_tool("npm", "exec sleep 30")
        supervisor.run(repo, "r1", ActionConfig(background=True))
        try:
            with pytest.raises(ValidationError, match="已在运行"):
                supervisor.run(repo, "r1", ActionConfig(background=True))
        finally:
            supervisor.stop(repo, "r1")

    def test_ignore_stdio_writes_no_log(self, supervisor, store, repo, make_tool):
        make_tool("npm", "echo hidden\nexit 0")
        supervisor.run(repo, "r1", ActionConfig(stdio="ignore", startup_delay=5000))
        assert not (repo / ".isolation-run.log").exists()
        assert store.load(repo).log_file is None

    def test_detached_process_group(self, supervisor, repo, make_tool):
        import os
        make_tool("npm", "exec sleep 30")
        out = supervisor.run(repo, "r1", ActionConfig(background=True, detached=True))
        pid = out["processId"]
        try:
            assert os.getpgid(pid) == pid
        finally:
            supervisor.stop(repo, "r1")


class TestStop:
    def test_stop_idle(self, supervisor, store, repo):
        manifest, signalled = supervisor.stop(repo, "r1")
        assert signalled is False
        assert manifest.status is None

    def test_stop_without_workspace(self, supervisor, tmp_path):
        assert supervisor.stop(tmp_path / "never-cloned", "never-cloned") == (None, False)

    def test_stop_escalates_to_sigkill(self, supervisor, store, repo, make_tool):
        import time
        make_tool("npm", "trap '' TERM\nwhile true; do sleep 0.1; done")
        pid = supervisor.run(repo, "r1", ActionConfig(background=True))["processId"]
        time.sleep(0.3)

        manifest, signalled = supervisor.stop(repo, "r1")
        assert signalled is True
        # 宽限期内 SIGTERM 被忽略，进程仍在
        time.sleep(0.2)
        assert store.load(repo).exit_signal is None

        supervisor.wait_pending(10)
        assert not is_alive(pid)
        final = store.load(repo)
        assert final.status == "stopped"
        assert final.exit_signal == "SIGKILL"
        assert final.last_stopped == manifest.last_stopped

    def test_stop_dead_pid_is_safe(self, supervisor, store, repo):
        proc = subprocess.Popen(["true"])
        proc.wait()
        m = store.load(repo)
        m.status = "running"
        m.process_id = proc.pid
        store.save(repo, m)
        manifest, signalled = supervisor.stop(repo, "r1")
        assert signalled is True
        assert store.load(repo).status == "stopped"

    def test_exit_watcher_skips_removed_workspace(self, supervisor, repo):
        import shutil
        shutil.rmtree(repo)
        supervisor._on_exit(repo, "r1", 12345, 0)
        assert not repo.exists()

    def test_exit_watcher_ignores_fresh_clone(self, supervisor, store, repo):
        supervisor._on_exit(repo, "r1", 111, -15)
        fresh = store.load(repo)
        assert fresh.status is None
        assert fresh.exit_signal is None

    def test_exit_watcher_ignores_newer_pid(self, supervisor, store, repo):
        m = store.load(repo)
        m.status = "running"
        m.process_id = 222
        store.save(repo, m)
        supervisor._on_exit(repo, "r1", 111, 0)
        assert store.load(repo).process_id == 222
        assert store.load(repo).status == "running"

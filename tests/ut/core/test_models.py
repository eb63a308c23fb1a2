"""核心数据模型单元测试"""

from __future__ import annotations

import pytest

from repoiso.core.exceptions import ValidationError
from repoiso.core.models import (
    Action,
    ActionConfig,
    ActionRequest,
    ActionResult,
    Manifest,
    RepoStatus,
    to_camel,
    validate_repo_id,
)


class TestHelpers:
    def test_to_camel(self):
        assert to_camel("package_manager") == "packageManager"
        assert to_camel("last_started") == "lastStarted"
        assert to_camel("branch") == "branch"

    @pytest.mark.parametrize("repo_id", ["owner-repo", "repo_1.x", "A"])
    def test_valid_repo_ids(self, repo_id):
        validate_repo_id(repo_id)

    @pytest.mark.parametrize("repo_id", ["", "../etc", "a/b", ".hidden", "a..b", "-x"])
    def test_invalid_repo_ids(self, repo_id):
        with pytest.raises(ValidationError, match="repoId"):
            validate_repo_id(repo_id)


class TestActionConfig:
    def test_defaults(self):
        cfg = ActionConfig.from_dict(None)
        assert cfg.stdio == "log"
        assert cfg.background is False
        assert cfg.depth is None
        assert cfg.env == {}

    def test_camel_case_wire_keys(self):
        cfg = ActionConfig.from_dict({
            "packageManager": "pnpm", "startupDelay": "500", "port": 8080,
            "env": {"A": 1}, "background": "true", "depth": 3,
        })
        assert cfg.package_manager == "pnpm"
        assert cfg.startup_delay == 500
        assert cfg.port == 8080
        assert cfg.env == {"A": "1"}
        assert cfg.background is True
        assert cfg.depth == 3

    def test_pipe_stdio_goes_to_log(self):
        assert ActionConfig.from_dict({"stdio": "pipe"}).stdio == "log"

    def test_unknown_stdio_rejected(self):
        with pytest.raises(ValidationError, match="stdio"):
            ActionConfig.from_dict({"stdio": "socket"})

    def test_depth_must_be_positive(self):
        with pytest.raises(ValidationError, match="depth"):
            ActionConfig.from_dict({"depth": 0})

    def test_unknown_package_manager(self):
        with pytest.raises(ValidationError, match="包管理器"):
            ActionConfig.from_dict({"packageManager": "bun"})

    def test_branch_injection_rejected(self):
        with pytest.raises(ValidationError, match="branch"):
            ActionConfig.from_dict({"branch": "--upload-pack=evil"})

    def test_port_not_integer(self):
        with pytest.raises(ValidationError, match="port"):
            ActionConfig.from_dict({"port": "http"})

    @pytest.mark.parametrize("data", [[1], "dev", []])
    def test_non_object_rejected(self, data):
        with pytest.raises(ValidationError, match="config"):
            ActionConfig.from_dict(data)


class TestActionRequest:
    def test_from_dict(self):
        req = ActionRequest.from_dict({
            "action": "clone", "repoId": "r1", "repoUrl": "https://github.com/a/b",
            "workspaceDir": "/tmp/ws", "config": {"branch": "dev"},
        })
        assert req.action is Action.CLONE
        assert req.repo_id == "r1"
        assert req.config.branch == "dev"

    def test_unknown_action(self):
        with pytest.raises(ValidationError, match="未知动作"):
            ActionRequest.from_dict({"action": "explode", "repoId": "r1"})

    def test_missing_repo_id(self):
        with pytest.raises(ValidationError, match="repoId"):
            ActionRequest.from_dict({"action": "status"})

    def test_to_dict_uses_wire_keys(self):
        req = ActionRequest(Action.RUN, "r1", workspace_dir="/ws",
                            config=ActionConfig(port=3000))
        data = req.to_dict()
        assert data["action"] == "run"
        assert data["repoId"] == "r1"
        assert data["workspaceDir"] == "/ws"
        assert data["config"]["port"] == 3000
        assert ActionRequest.from_dict(data).config.port == 3000


class TestActionResult:
    def test_success_shape(self):
        r = ActionResult.ok(Action.STOP, "r1", "done", manifest={"status": "stopped"})
        assert r.to_dict() == {
            "success": True, "action": "stop", "repoId": "r1",
            "manifest": {"status": "stopped"}, "message": "done",
        }

    def test_failure_shape(self):
        r = ActionResult.fail("run", "r1", "boom", code="NO_RUN_SCRIPT",
                              availableScripts=["build"])
        data = r.to_dict()
        assert data["success"] is False
        assert data["errorCode"] == "NO_RUN_SCRIPT"
        assert data["error"] == "boom"
        assert data["availableScripts"] == ["build"]
        assert "message" not in data

    def test_from_dict_keeps_payload(self):
        r = ActionResult.from_dict({
            "success": True, "action": "run", "repoId": "r1",
            "processId": 42, "message": "ok",
        })
        assert r.success
        assert r.payload == {"processId": 42}


class TestManifest:
    def test_fresh_clone_phase(self):
        m = Manifest(repo_id="r1")
        assert m.status is None
        assert m.phase is RepoStatus.CLONED
        assert not m.is_running

    def test_running_requires_pid(self):
        m = Manifest(repo_id="r1", status="running")
        assert not m.is_running
        m.process_id = 123
        assert m.is_running

    def test_unknown_keys_preserved(self):
        data = {"repoId": "r1", "status": "stopped", "customTag": "x"}
        m = Manifest.from_dict(data)
        assert m.extra == {"customTag": "x"}
        out = m.to_dict()
        assert out["customTag"] == "x"
        assert out["repoId"] == "r1"
        assert out["status"] == "stopped"

    def test_legacy_status_downgraded(self):
        m = Manifest.from_dict({"repoId": "r1", "status": "starting"})
        assert m.status is None
        assert m.extra["legacyStatus"] == "starting"

    def test_to_dict_camel_case(self):
        out = Manifest(repo_id="r1", process_id=7, exit_code=0).to_dict()
        assert out["processId"] == 7
        assert out["exitCode"] == 0
        assert out["isolated"] is True
        assert "process_id" not in out

"""logger.py 单元测试"""

from __future__ import annotations

import json
import logging

import io

from repoiso.utils.logger import ActionLogger, JSONFormatter, reset_logging, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="repoiso.test", level=logging.INFO, pathname=__file__, lineno=10,
        msg="动作开始: %s", args=("clone",), exc_info=None,
    )
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_fields():
    data = json.loads(JSONFormatter().format(_record()))
    assert data["level"] == "INFO"
    assert data["message"] == "动作开始: clone"
    assert data["logger"] == "repoiso.test"
    assert "repo_id" not in data


def test_json_formatter_context():
    data = json.loads(JSONFormatter().format(_record(repo_id="r1", action="clone")))
    assert data["repo_id"] == "r1"
    assert data["action"] == "clone"


def test_setup_logging_replaces_handlers():
    try:
        setup_logging("DEBUG", json_output=True)
        setup_logging("WARNING")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)
    finally:
        reset_logging()


def test_action_logger_injects_context():
    buf = io.StringIO()
    try:
        setup_logging("INFO", json_output=True, stream=buf)
        log = ActionLogger(logging.getLogger("repoiso.test"), "r1", "install")
        log.info("安装中", extra={"pid": 42})
        data = json.loads(buf.getvalue().strip())
        assert data["repo_id"] == "r1"
        assert data["action"] == "install"
        assert data["pid"] == 42
    finally:
        reset_logging()


def test_filelock_debug_silenced():
    try:
        setup_logging("DEBUG", stream=io.StringIO())
        assert logging.getLogger("filelock").level == logging.WARNING
    finally:
        reset_logging()

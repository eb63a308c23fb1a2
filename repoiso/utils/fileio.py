"""YAML 配置与 JSON 清单的读写

清单会被多个执行单元交替读写，写入一律走同目录临时文件 + os.replace。
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 超过此大小的配置 / 清单视为异常文件，拒绝解析
MAX_FILE_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str, *, create_parent: bool = True) -> None:
    """整体替换 path 的内容，读方只会看到旧文件或新文件

    create_parent=False 时父目录必须已存在（清单写入这样用，
    unload 删掉的工作空间不能被迟到的写入重新建出来），否则抛 OSError。
    """
    if create_parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def _too_large(p: Path) -> bool:
    return p.stat().st_size > MAX_FILE_SIZE


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取 YAML 配置文件，顶层必须是映射

    文件不存在或为空时返回 {}；顶层不是映射时告警并返回 {}。
    语法错误抛 yaml.YAMLError，超过 MAX_FILE_SIZE 抛 ValueError。
    """
    p = Path(path)
    if not p.exists():
        return {}
    if _too_large(p):
        raise ValueError(f"配置文件过大: {p} (上限 {MAX_FILE_SIZE} 字节)")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.error("配置文件 YAML 语法错误: %s (%s)", p, e)
        raise

    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    logger.warning("配置文件顶层应为映射，实际为 %s，已忽略: %s", type(data).__name__, p)
    return {}


def load_json(path: str | Path) -> dict[str, Any] | None:
    """读取 JSON 对象文件，不存在、损坏或顶层不是对象时返回 None"""
    p = Path(path)
    if not p.is_file():
        return None
    try:
        if _too_large(p):
            raise ValueError(f"文件过大 (上限 {MAX_FILE_SIZE} 字节)")
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("读取 JSON 失败，按不存在处理: %s (%s)", p, e)
        return None
    return data if isinstance(data, dict) else None


def save_json(path: str | Path, data: dict[str, Any], *, create_parent: bool = True) -> None:
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    atomic_write(Path(path), content, create_parent=create_parent)

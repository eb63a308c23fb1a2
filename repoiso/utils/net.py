"""网络工具 — 克隆 URL 校验与凭据注入"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from repoiso.core.exceptions import ValidationError

_ALLOWED_SCHEMES = frozenset(("http", "https", "ssh", "git", "file"))


def validate_repo_url(url: str) -> None:
    """校验克隆地址的协议，拒绝 ext:: 等可执行命令的 git 传输

    scp 风格的 git@host:owner/repo.git 没有 scheme，直接放行。

    Raises:
        ValidationError: URL 为空或协议不在白名单内
    """
    if not url:
        raise ValidationError("clone 必须指定 repoUrl")
    if url.startswith("-"):
        raise ValidationError(f"repoUrl 非法: {url}")
    parts = urlsplit(url)
    if "://" not in url:
        if "::" in url:
            raise ValidationError(f"不允许的 git 传输: {url}")
        return
    if parts.scheme not in _ALLOWED_SCHEMES:
        raise ValidationError(
            f"不允许的 URL 协议 '{parts.scheme}'，"
            f"仅支持 {', '.join(sorted(_ALLOWED_SCHEMES))}: {url}"
        )


def host_matches(url: str, hosts: list[str]) -> bool:
    """https URL 的主机名是否命中凭据注入白名单（含子域名）"""
    parts = urlsplit(url)
    if parts.scheme != "https" or not parts.hostname:
        return False
    host = parts.hostname.lower()
    return any(host == h.lower() or host.endswith("." + h.lower()) for h in hosts)


def inject_token(url: str, token: str, hosts: list[str]) -> str:
    """把 token 注入 https URL 的 userinfo 部分

    只在配置了 token 且主机命中白名单时注入；URL 已自带凭据时保持原样。
    """
    if not token or not host_matches(url, hosts):
        return url
    parts = urlsplit(url)
    if parts.username or parts.password:
        return url
    netloc = f"{token}@{parts.netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

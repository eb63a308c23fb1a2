"""net.py 单元测试"""

from __future__ import annotations

import pytest

from repoiso.core.exceptions import ValidationError
from repoiso.utils.net import host_matches, inject_token, validate_repo_url


class TestValidateRepoUrl:
    @pytest.mark.parametrize("url", [
        "https://github.com/a/b.git",
        "git@github.com:a/b.git",
        "ssh://git@host/a/b",
        "file:///srv/repos/a",
    ])
    def test_allowed(self, url):
        validate_repo_url(url)

    def test_empty(self):
        with pytest.raises(ValidationError, match="repoUrl"):
            validate_repo_url("")

    @pytest.mark.parametrize("url", [
        "ext::sh -c touch% /tmp/pwned",
        "--upload-pack=evil",
        "ftp://host/repo",
    ])
    def test_rejected(self, url):
        with pytest.raises(ValidationError):
            validate_repo_url(url)


class TestTokenInjection:
    def test_host_matches_subdomain(self):
        assert host_matches("https://api.github.com/x", ["github.com"])
        assert not host_matches("https://gitlab.com/x", ["github.com"])
        assert not host_matches("http://github.com/x", ["github.com"])

    def test_inject(self):
        url = inject_token("https://github.com/a/b.git", "tok", ["github.com"])
        assert url == "https://tok@github.com/a/b.git"

    def test_no_token(self):
        assert inject_token("https://github.com/a/b", "", ["github.com"]) == \
            "https://github.com/a/b"

    def test_other_host_untouched(self):
        assert inject_token("https://example.com/a/b", "tok", ["github.com"]) == \
            "https://example.com/a/b"

    def test_existing_credentials_untouched(self):
        url = "https://user:pw@github.com/a/b"
        assert inject_token(url, "tok", ["github.com"]) == url

from __future__ import annotations

import os

import pytest

from triageq.infrastructure.user_directory import YamlUserDirectory

USERS_YAML = """
users:
  user-1:
    email: jane@example.com
    gmail_access_token: ya29.test-token
    push_tokens:
      - ExponentPushToken[a]
      - ""
  user-2:
    email: sam@example.com
"""


@pytest.fixture
def users_file(tmp_path):
    path = tmp_path / "users.yaml"
    path.write_text(USERS_YAML)
    return path


def test_exists(users_file):
    directory = YamlUserDirectory(users_file)
    assert directory.exists("user-1")
    assert directory.exists("user-2")
    assert not directory.exists("ghost")


def test_tokens_for_skips_blank_entries(users_file):
    directory = YamlUserDirectory(users_file)
    assert directory.tokens_for("user-1") == ["ExponentPushToken[a]"]
    assert directory.tokens_for("user-2") == []
    assert directory.tokens_for("ghost") == []


def test_missing_file_means_no_users(tmp_path):
    directory = YamlUserDirectory(tmp_path / "absent.yaml")
    assert not directory.exists("user-1")


def test_reloads_when_file_changes(users_file):
    directory = YamlUserDirectory(users_file)
    assert not directory.exists("user-3")

    users_file.write_text(USERS_YAML + "  user-3:\n    email: kim@example.com\n")
    stat = users_file.stat()
    os.utime(users_file, (stat.st_atime, stat.st_mtime + 5))

    assert directory.exists("user-3")


def test_gmail_service_requires_token(users_file):
    directory = YamlUserDirectory(users_file)
    with pytest.raises(ValueError, match="No Gmail credentials"):
        directory.build_gmail_service("user-2")


def test_gmail_service_built_with_access_token(users_file, monkeypatch):
    captured = {}

    def fake_build(api, version, credentials, cache_discovery):
        captured.update(api=api, version=version, token=credentials.token)
        return "service"

    monkeypatch.setattr("triageq.infrastructure.user_directory.build", fake_build)
    directory = YamlUserDirectory(users_file)

    assert directory.build_gmail_service("user-1") == "service"
    assert captured == {"api": "gmail", "version": "v1", "token": "ya29.test-token"}

"""デプロイ要求とデプロイセッション関連のデータモデル。"""

import re
from typing import Literal
from urllib.parse import urlparse

from pydantic import ConfigDict, Field, field_validator

from berth.models.common import CamelModel

DeployStep = Literal["idle", "cloning", "building", "publishing", "done"]
DeploymentStatus = Literal["success", "failed", "cancelled"]

# コンテナ名・ディレクトリ名として安全なアプリ名
_APP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# appPathで禁止するパターン
_DISALLOWED_PATH_PATTERNS = ("..", "~")


def is_valid_app_name(name: str) -> bool:
    """アプリ名がコンテナ名・ディレクトリ名として安全か判定する。"""
    return bool(_APP_NAME_RE.match(name))


class DeployRequest(CamelModel):
    """デプロイ要求。受理後は変更しない。"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(max_length=63)
    repo_url: str
    branch: str = "main"
    framework: str | None = None
    app_path: str | None = None
    variables: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        if not is_valid_app_name(value):
            raise ValueError("name may only contain letters, digits, '.', '_' and '-'")
        return value

    @field_validator("repo_url")
    @classmethod
    def _check_repo_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("repoUrl is required")
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("repoUrl must be an http(s) URL")
        return value

    @field_validator("branch", mode="before")
    @classmethod
    def _default_branch(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "main"
        if not isinstance(value, str):
            return value
        value = value.strip()
        # gitのオプションとして解釈される値は受け付けない
        if value.startswith("-") or any(ch.isspace() for ch in value) or ".." in value:
            raise ValueError("branch is not a valid git branch name")
        return value

    @field_validator("framework", "variables", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("app_path", mode="before")
    @classmethod
    def _check_app_path(cls, value: object) -> object:
        if value is None:
            return None
        if not isinstance(value, str):
            return value
        value = value.strip()
        if value.startswith("/"):
            raise ValueError("appPath must be a relative path")
        value = value.strip("/")
        if not value or value == ".":
            return None
        for pattern in _DISALLOWED_PATH_PATTERNS:
            if pattern in value:
                raise ValueError(f"appPath must not contain '{pattern}'")
        return value


class PublishResult(CamelModel):
    """Publisherの実行結果。"""

    container: str
    status: str
    url: str | None = None


class DeployConfig(CamelModel):
    """保存済みの設定から組み立てた再デプロイ用の入力値。"""

    name: str
    repo_url: str
    branch: str = "main"
    framework: str | None = None
    app_path: str | None = None
    variables: str | None = None
    domain: str | None = None

"""アプリごとの設定データモデル。"""

from datetime import datetime
from typing import Any

from pydantic import field_validator

from berth.models.common import CamelModel, parse_timestamp


class AppSettings(CamelModel):
    """アプリごとに保存されるメタデータ。

    空文字列や空のマップは「未設定」として正規化する。
    """

    app: str
    notes: str | None = None
    owner: str | None = None
    public_env: dict[str, str] | None = None
    secrets: dict[str, str] | None = None
    domain: str | None = None
    repo_url: str | None = None
    branch: str | None = None
    framework: str | None = None
    app_path: str | None = None
    last_commit: str | None = None
    last_deployed_at: datetime | None = None

    @field_validator(
        "notes", "owner", "domain", "repo_url", "branch", "framework", "app_path", "last_commit", mode="before"
    )
    @classmethod
    def _trim(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("public_env", "secrets", mode="before")
    @classmethod
    def _sanitize_env(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        cleaned = {str(key).strip(): str(val) for key, val in value.items() if str(key).strip()}
        return cleaned or None

    @field_validator("last_deployed_at", mode="before")
    @classmethod
    def _parse_deployed_at(cls, value: Any) -> Any:
        if value is None or isinstance(value, datetime):
            return value
        return parse_timestamp(value)


def parse_env_text(text: str | None) -> dict[str, str]:
    """`KEY=VALUE` 形式のテキスト（1行1件）を辞書に変換する。"""
    result: dict[str, str] = {}
    if not text:
        return result
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key:
            result[key] = value.strip()
    return result


def env_to_text(env: dict[str, str] | None) -> str:
    if not env:
        return ""
    return "\n".join(f"{key}={value}" for key, value in env.items())

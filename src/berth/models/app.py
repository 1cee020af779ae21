"""管理コンテナ（アプリ）関連のデータモデル。"""

from datetime import datetime
from typing import Literal

from pydantic import Field

from berth.models.common import CamelModel, utc_now

ContainerState = Literal["running", "restarting", "exited"]
ContainerAction = Literal["start", "stop", "restart", "remove"]

CONTAINER_ACTIONS: tuple[str, ...] = ("start", "stop", "restart", "remove")


class AppInfo(CamelModel):
    """管理コンテナ1件分のビュー。"""

    name: str
    container: str
    state: ContainerState
    status: str
    updated_at: datetime = Field(default_factory=utc_now)
    url: str | None = None
    repo_url: str | None = None
    branch: str | None = None
    framework: str | None = None
    last_deployed_at: datetime | None = None


class EngineContainer(CamelModel):
    """コンテナエンジンの `ps` 1行分。"""

    name: str
    state: str
    status: str
    created_at: datetime = Field(default_factory=utc_now)


class ActionResult(CamelModel):
    """ライフサイクル操作の結果。removeの場合はappがNoneになる。"""

    app: AppInfo | None = None
    removed: bool = False
    purged: bool = False


def normalize_state(text: str) -> ContainerState:
    """エンジンの状態テキストを3状態に正規化する。"""
    lowered = text.lower()
    if "running" in lowered:
        return "running"
    if "restart" in lowered:
        return "restarting"
    return "exited"

"""デプロイ履歴イベントのデータモデルと後方互換な正規化処理。"""

import math
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import Field

from berth.models.app import CONTAINER_ACTIONS, ContainerAction
from berth.models.common import CamelModel, parse_timestamp
from berth.models.deploy import DeploymentStatus

_DEPLOYMENT_STATUSES = ("success", "failed", "cancelled")
_ACTION_STATUSES = ("success", "failed")


class DeploymentEvent(CamelModel):
    """1回のデプロイセッションの記録。"""

    kind: Literal["deployment"] = "deployment"
    id: str
    app: str
    container: str
    repo_url: str
    branch: str
    framework: str | None = None
    commit: str | None = None
    status: DeploymentStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = Field(ge=0)
    message: str | None = None


class ContainerActionEvent(CamelModel):
    """コンテナのライフサイクル操作の記録。"""

    kind: Literal["container-action"] = "container-action"
    id: str
    app: str
    container: str
    action: ContainerAction
    status: Literal["success", "failed"]
    timestamp: datetime
    message: str | None = None


HistoryEvent = Annotated[DeploymentEvent | ContainerActionEvent, Field(discriminator="kind")]


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _decode_deployment(raw: dict[str, Any]) -> DeploymentEvent | None:
    event_id = _optional_str(raw.get("id"))
    app = _optional_str(raw.get("app"))
    if event_id is None or app is None:
        return None

    status = raw.get("status")
    if status is None:
        status = "success"
    if status not in _DEPLOYMENT_STATUSES:
        return None

    started_at = parse_timestamp(raw.get("startedAt"))
    completed_at = parse_timestamp(raw.get("completedAt"))
    if started_at is None:
        started_at = completed_at
    if completed_at is None:
        completed_at = started_at
    if started_at is None or completed_at is None:
        return None

    duration = raw.get("durationMs")
    if isinstance(duration, bool) or not isinstance(duration, int | float) or not math.isfinite(duration):
        duration = (completed_at - started_at).total_seconds() * 1000
    duration_ms = max(0, int(duration))

    return DeploymentEvent(
        id=event_id,
        app=app,
        container=_optional_str(raw.get("container")) or app,
        repo_url=_optional_str(raw.get("repoUrl")) or "",
        branch=_optional_str(raw.get("branch")) or "main",
        framework=_optional_str(raw.get("framework")),
        commit=_optional_str(raw.get("commit")),
        status=status,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=duration_ms,
        message=_optional_str(raw.get("message")),
    )


def _decode_container_action(raw: dict[str, Any]) -> ContainerActionEvent | None:
    event_id = _optional_str(raw.get("id"))
    app = _optional_str(raw.get("app"))
    container = _optional_str(raw.get("container"))
    action = raw.get("action")
    timestamp = parse_timestamp(raw.get("timestamp"))
    if event_id is None or app is None or container is None or timestamp is None:
        return None
    if action not in CONTAINER_ACTIONS:
        return None

    status = raw.get("status")
    if status is None:
        status = "success"
    if status not in _ACTION_STATUSES:
        return None

    return ContainerActionEvent(
        id=event_id,
        app=app,
        container=container,
        action=action,
        status=status,
        timestamp=timestamp,
        message=_optional_str(raw.get("message")),
    )


def normalize_history_record(raw: Any) -> DeploymentEvent | ContainerActionEvent | None:
    """保存済みレコードをデフォルト値補完付きで復元する。

    `kind` を持たない古いレコードはデプロイイベントとして扱う。
    欠損フィールドは次のように補完する:
    status → success、commit/framework → なし、durationMs → 開始・終了時刻から算出。
    解釈できない形状（未知のkindなど）はNoneを返し、呼び出し側で読み飛ばす。
    """
    if not isinstance(raw, dict):
        return None
    kind = raw.get("kind", "deployment")
    if kind == "deployment":
        return _decode_deployment(raw)
    if kind == "container-action":
        return _decode_container_action(raw)
    return None


def event_sort_key(event: DeploymentEvent | ContainerActionEvent) -> datetime:
    """新しい順に並べるための時刻。"""
    if isinstance(event, DeploymentEvent):
        return event.completed_at
    return event.timestamp

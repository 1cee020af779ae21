"""管理コンテナの一覧とライフサイクル操作。"""

import logging
import uuid
from typing import Literal, cast

from berth.config import ServerConfig
from berth.models.app import (
    CONTAINER_ACTIONS,
    ActionResult,
    AppInfo,
    ContainerAction,
    EngineContainer,
    normalize_state,
)
from berth.models.common import utc_now
from berth.models.deploy import is_valid_app_name
from berth.models.errors import (
    ContainerEngineError,
    ContainerNotManagedError,
    ContainerVanishedError,
    StorageError,
    ValidationFailedError,
)
from berth.models.history import ContainerActionEvent
from berth.models.settings import AppSettings
from berth.services.engine import ContainerEngine
from berth.services.publisher import Publisher, public_url
from berth.storage.history import HistoryStore
from berth.storage.pending import PendingAppStore
from berth.storage.settings import SettingsStore

logger = logging.getLogger(__name__)


def merge_apps(live: list[AppInfo], pending: dict[str, AppInfo]) -> list[AppInfo]:
    """エンジンの観測結果と仮エントリをアプリ名単位でマージする。

    エンジンの観測結果を常に優先する。ただしエンジン側にURLがない場合のみ、
    仮エントリのURLで補う。
    """
    merged: dict[str, AppInfo] = {}
    for app in live:
        merged.setdefault(app.name, app)
    for name, entry in pending.items():
        current = merged.get(name)
        if current is None:
            merged[name] = entry
        elif current.url is None and entry.url:
            merged[name] = current.model_copy(update={"url": entry.url})
    return sorted(merged.values(), key=lambda app: app.name)


class ContainerInventory:
    """管理プレフィックスを持つコンテナだけを一覧・操作する。"""

    def __init__(
        self,
        engine: ContainerEngine,
        publisher: Publisher,
        pending: PendingAppStore,
        history: HistoryStore,
        config: ServerConfig,
        settings: SettingsStore | None = None,
    ) -> None:
        self._engine = engine
        self._publisher = publisher
        self._pending = pending
        self._history = history
        self._settings = settings
        self._config = config

    @property
    def prefix(self) -> str:
        return self._config.container_prefix

    def app_name(self, container: str) -> str:
        return container[len(self.prefix) :]

    def _to_app(self, container: EngineContainer, settings: AppSettings | None) -> AppInfo:
        name = self.app_name(container.name)
        return AppInfo(
            name=name,
            container=container.name,
            state=normalize_state(container.state),
            status=container.status,
            updated_at=container.created_at,
            # URLは保存せず、毎回現在の設定から計算する
            url=public_url(self._config.public_base_url, name),
            repo_url=settings.repo_url if settings else None,
            branch=settings.branch if settings else None,
            framework=settings.framework if settings else None,
            last_deployed_at=settings.last_deployed_at if settings else None,
        )

    async def _read_settings(self) -> dict[str, AppSettings]:
        if self._settings is None:
            return {}
        return await self._settings.read_all()

    async def _live_apps(self) -> list[AppInfo]:
        containers = await self._engine.list_containers(self.prefix)
        all_settings = await self._read_settings()
        return [self._to_app(c, all_settings.get(self.app_name(c.name))) for c in containers]

    async def list_apps(self) -> list[AppInfo]:
        """エンジンの観測結果と仮エントリをマージした一覧を返す。

        エンジンへの問い合わせに失敗した場合は空の観測結果として扱い、
        仮エントリだけを返す。
        """
        try:
            live = await self._live_apps()
        except ContainerEngineError:
            logger.warning("Container inventory query failed; serving pending entries only", exc_info=True)
            return merge_apps([], self._pending.snapshot())

        merged = merge_apps(live, self._pending.snapshot())
        self._pending.prune({app.name for app in live})
        return merged

    async def get_app(self, container: str) -> AppInfo | None:
        for app in await self._live_apps():
            if app.container == container:
                return app
        return None

    async def _record(
        self,
        app: str,
        container: str,
        action: ContainerAction,
        status: Literal["success", "failed"],
        message: str | None = None,
    ) -> None:
        event = ContainerActionEvent(
            id=uuid.uuid4().hex,
            app=app,
            container=container,
            action=action,
            status=status,
            timestamp=utc_now(),
            message=message,
        )
        await self._history.record(event)

    def _authorize(self, container: str) -> str:
        if not container.startswith(self.prefix):
            raise ContainerNotManagedError(container)
        app = self.app_name(container)
        if not is_valid_app_name(app):
            raise ContainerNotManagedError(container)
        return app

    async def act(self, container: str, action: str, purge: bool = False) -> ActionResult:
        """コンテナにライフサイクル操作を適用する。

        Args:
            container: エンジン上のコンテナ名（管理プレフィックス付き）。
            action: start / stop / restart / remove のいずれか。
            purge: removeの場合に公開済み成果物も削除するか。

        Returns:
            操作後のアプリ情報、またはremoveの結果。

        Raises:
            ContainerNotManagedError: 管理プレフィックスを持たない、またはアプリ名が不正なコンテナの場合。
            ValidationFailedError: 未知の操作の場合。
            ContainerEngineError: エンジンの操作または操作後の状態取得に失敗した場合。
            ContainerVanishedError: 操作後にコンテナが見つからなかった場合。
        """
        app = self._authorize(container)
        if action not in CONTAINER_ACTIONS:
            raise ValidationFailedError(f"Unknown action {action}")
        verb = cast(ContainerAction, action)

        if verb == "remove":
            return await self._remove(container, app, purge)

        operations = {
            "start": self._engine.start,
            "stop": self._engine.stop,
            "restart": self._engine.restart,
        }
        try:
            await operations[verb](container)
        except ContainerEngineError as e:
            await self._record(app, container, verb, "failed", str(e))
            raise
        await self._record(app, container, verb, "success")

        info = await self.get_app(container)
        if info is None:
            raise ContainerVanishedError(container)
        return ActionResult(app=info)

    async def _remove(self, container: str, app: str, purge: bool) -> ActionResult:
        try:
            existed = await self._engine.remove(container)
        except ContainerEngineError as e:
            await self._record(app, container, "remove", "failed", str(e))
            raise

        purged = False
        if purge:
            try:
                purged = await self._publisher.purge(app)
            except OSError as e:
                await self._record(app, container, "remove", "failed", f"Failed to purge artifacts: {e}")
                raise StorageError(f"Failed to purge artifacts for {app}: {e}") from e

        self._pending.discard(app)

        # 既に削除済みのコンテナに対しては履歴を残さない
        if existed or purged:
            await self._record(app, container, "remove", "success", "Artifacts purged" if purged else None)
        return ActionResult(removed=True, purged=purged)

"""JSONオブジェクトファイルによるアプリ設定ストア。"""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from berth.models.common import format_validation_error
from berth.models.errors import ValidationFailedError
from berth.models.settings import AppSettings
from berth.storage.history import write_json_atomic

logger = logging.getLogger(__name__)


class SettingsStore:
    """アプリ名をキーとした設定の永続化層。"""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load_sync(self) -> dict[str, AppSettings]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable settings file %s", self._path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            return {}

        result: dict[str, AppSettings] = {}
        for key, value in data.items():
            if not isinstance(value, dict):
                continue
            try:
                result[key] = AppSettings.model_validate({**value, "app": key})
            except ValidationError:
                logger.warning("Skipping invalid settings for %s", key, exc_info=True)
        return result

    def _persist_sync(self, all_settings: dict[str, AppSettings]) -> None:
        write_json_atomic(self._path, {key: value.to_wire() for key, value in all_settings.items()})

    def _save_sync(self, app: str, changes: dict[str, Any]) -> AppSettings:
        with self._lock:
            all_settings = self._load_sync()
            current = all_settings[app].to_wire() if app in all_settings else {}
            changes = {to_camel(key) if "_" in key else key: value for key, value in changes.items()}
            try:
                merged = AppSettings.model_validate({**current, **changes, "app": app})
            except ValidationError as e:
                raise ValidationFailedError(f"Invalid settings for {app}: {format_validation_error(e)}") from e
            all_settings[app] = merged
            self._persist_sync(all_settings)
            return merged

    def _delete_sync(self, app: str) -> bool:
        with self._lock:
            all_settings = self._load_sync()
            if app not in all_settings:
                return False
            del all_settings[app]
            self._persist_sync(all_settings)
            return True

    def _read_all_sync(self) -> dict[str, AppSettings]:
        with self._lock:
            return self._load_sync()

    async def read_all(self) -> dict[str, AppSettings]:
        return await asyncio.to_thread(self._read_all_sync)

    async def get(self, app: str) -> AppSettings | None:
        return (await self.read_all()).get(app)

    async def save(self, app: str, changes: dict[str, Any]) -> AppSettings:
        """既存の設定に変更をマージして保存する。

        Args:
            app: アプリ名。
            changes: camelCase・snake_caseどちらのキーでも受け付ける部分更新。

        Returns:
            正規化済みの保存結果。

        Raises:
            ValidationFailedError: 変更内容が設定として不正な場合。
        """
        return await asyncio.to_thread(self._save_sync, app, changes)

    async def delete(self, app: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, app)

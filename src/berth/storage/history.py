"""JSON配列ファイルによる追記専用のデプロイ履歴ストア。"""

import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from berth.models.common import utc_now
from berth.models.errors import StorageError
from berth.models.history import HistoryEvent, event_sort_key, normalize_history_record

logger = logging.getLogger(__name__)

_EVENT_ADAPTER: TypeAdapter[HistoryEvent] = TypeAdapter(HistoryEvent)


def write_json_atomic(path: Path, data: Any) -> None:
    """同一ディレクトリの一時ファイルに書き込んでから置き換える。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class HistoryStore:
    """デプロイ・コンテナ操作イベントの履歴。

    ファイル全体を読み込んで末尾に追加し書き戻す。読み込みから書き込みまでを
    単一のロックで保護するため、同時に追記しても互いの内容を失わない。
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_raw(self) -> list[Any]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"History file is not valid JSON: {self._path}: {e}") from e
        if not isinstance(data, list):
            raise StorageError(f"History file must contain a JSON array: {self._path}")
        return data

    def _quarantine(self) -> Path:
        """壊れた履歴ファイルを退避し、退避先のパスを返す。"""
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        target = self._path.with_name(f"{self._path.name}.corrupt-{stamp}")
        os.replace(self._path, target)
        return target

    def _append_sync(self, event: HistoryEvent) -> None:
        with self._lock:
            try:
                records = self._load_raw()
            except StorageError:
                moved = self._quarantine()
                logger.warning("History file %s was unreadable; moved it to %s", self._path, moved, exc_info=True)
                records = []
            records.append(_EVENT_ADAPTER.dump_python(event, mode="json", by_alias=True, exclude_none=True))
            write_json_atomic(self._path, records)

    def _read_sync(self) -> list[HistoryEvent]:
        with self._lock:
            try:
                records = self._load_raw()
            except StorageError:
                logger.warning("Ignoring unreadable history file %s", self._path, exc_info=True)
                return []
        events: list[HistoryEvent] = []
        for raw in records:
            event = normalize_history_record(raw)
            if event is None:
                logger.debug("Skipping unrecognised history record: %r", raw)
                continue
            events.append(event)
        return events

    async def append(self, event: HistoryEvent) -> None:
        """イベントを1件追記する。

        既存ファイルが壊れている場合は `<name>.corrupt-<timestamp>` に退避し、
        新しい配列から書き始める。

        Raises:
            OSError: 読み書きまたは退避に失敗した場合。
        """
        await asyncio.to_thread(self._append_sync, event)

    async def record(self, event: HistoryEvent) -> bool:
        """追記を試み、失敗してもログに残すだけで例外は送出しない。"""
        try:
            await self.append(event)
        except (StorageError, OSError):
            logger.exception("Failed to write %s history event %s for %s", event.kind, event.id, event.app)
            return False
        return True

    async def read_all(self) -> list[HistoryEvent]:
        """保存順のままイベントを返す。壊れたレコードは読み飛ばす。"""
        return await asyncio.to_thread(self._read_sync)

    async def list_events(self, app: str | None = None, limit: int | None = None) -> list[HistoryEvent]:
        """新しい順にイベントを返す。appで絞り込み、limit件で切り詰める。"""
        events = list(reversed(await self.read_all()))
        if app:
            events = [e for e in events if e.app == app]
        events.sort(key=event_sort_key, reverse=True)
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

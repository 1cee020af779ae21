"""公開直後のアプリを保持するメモリ上のストア。"""

import threading

from berth.models.app import AppInfo


class PendingAppStore:
    """エンジンの `ps` にまだ現れないアプリの仮エントリ。

    デプロイセッションとインベントリの双方から同時に参照されるため、
    すべての操作をロックで保護する。
    """

    def __init__(self) -> None:
        self._entries: dict[str, AppInfo] = {}
        self._lock = threading.Lock()

    def upsert(self, app: AppInfo) -> None:
        with self._lock:
            self._entries[app.name] = app

    def discard(self, name: str) -> AppInfo | None:
        with self._lock:
            return self._entries.pop(name, None)

    def get(self, name: str) -> AppInfo | None:
        with self._lock:
            return self._entries.get(name)

    def snapshot(self) -> dict[str, AppInfo]:
        with self._lock:
            return dict(self._entries)

    def prune(self, observed: set[str]) -> None:
        """エンジンが観測済みのアプリの仮エントリを破棄する。"""
        with self._lock:
            for name in observed & self._entries.keys():
                del self._entries[name]

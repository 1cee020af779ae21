"""デプロイセッションごとの一時作業ディレクトリの管理。"""

import asyncio
import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """クローンとビルドに使う使い捨てディレクトリを払い出す。"""

    def __init__(self, root: Path | None = None, prefix: str = "berth-") -> None:
        self._root = root
        self._prefix = prefix

    def acquire(self) -> Path:
        """一意な一時ディレクトリを作成して返す。"""
        if self._root is not None:
            self._root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=self._prefix, dir=self._root))

    def release(self, path: Path) -> bool:
        """ディレクトリを再帰的に削除する。失敗してもログに残すだけで例外は送出しない。"""
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return True
        except OSError:
            logger.warning("Failed to remove workspace %s", path, exc_info=True)
            return False
        logger.debug("Removed workspace %s", path)
        return True

    @asynccontextmanager
    async def workspace(self) -> AsyncIterator[Path]:
        """スコープを抜けるとき（成功・失敗・キャンセルのいずれでも）必ず削除されるディレクトリ。"""
        path = await asyncio.to_thread(self.acquire)
        try:
            yield path
        finally:
            await asyncio.shield(asyncio.to_thread(self.release, path))

"""1回のデプロイ要求に対応するセッション。"""

import asyncio
import uuid
from collections import deque
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

from berth.models.common import utc_now
from berth.models.deploy import DeployRequest, DeployStep, DeploymentStatus
from berth.services.process import ProcessHandle

# セッションが保持するログの最大行数
DEFAULT_LOG_LIMIT = 600


class DeploymentSession:
    """デプロイの進捗・ログ・キャンセル状態を保持する。

    オーケストレータが `emit()` で書き込んだ出力は、キューを経由して
    HTTPレスポンスのストリームに順番どおりに届く。`finish()` 以降は書き込めない。
    """

    def __init__(self, request: DeployRequest, *, log_limit: int = DEFAULT_LOG_LIMIT) -> None:
        self.id = uuid.uuid4().hex
        self.request = request
        self.step: DeployStep = "idle"
        self.log: deque[str] = deque(maxlen=log_limit)
        self.commit: str | None = None
        self.outcome: DeploymentStatus | None = None
        self.error: str | None = None
        self.started_at: datetime = utc_now()
        self.completed_at: datetime | None = None
        self.workspace: Path | None = None
        self.process = ProcessHandle()
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()

    @property
    def app(self) -> str:
        return self.request.name

    @property
    def cancelled(self) -> bool:
        return self.process.cancelled

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    @property
    def duration_ms(self) -> int:
        end = self.completed_at or utc_now()
        return max(0, int((end - self.started_at).total_seconds() * 1000))

    def emit(self, text: str) -> None:
        """出力を1チャンク追加する。末尾に改行がなければ補う。"""
        if self.finished:
            return
        if not text.endswith("\n"):
            text = f"{text}\n"
        for line in text.splitlines():
            self.log.append(line)
        self._queue.put_nowait(text)

    def set_commit(self, commit: str) -> None:
        """チェックアウトしたコミットを記録する。最初に記録した値だけが有効。"""
        if self.commit is None:
            self.commit = commit

    def cancel(self) -> None:
        """クライアント切断時に呼ばれる。実行中の子プロセスにも終了を要求する。"""
        self.process.cancel()

    def finish(self, outcome: DeploymentStatus, error: str | None = None) -> None:
        if self.finished:
            return
        self.outcome = outcome
        self.error = error
        self.step = "done"
        if self.completed_at is None:
            self.completed_at = utc_now()
        self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[str]:
        """終了するまで出力チャンクを順に返す。"""
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

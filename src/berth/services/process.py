"""外部プロセス（git・パッケージマネージャ・コンテナエンジン）の実行。"""

import asyncio
import logging
import os
import shlex
import signal
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel

from berth.models.errors import DeploymentCancelledError, ProcessFailedError, ProcessTimeoutError

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

# 失敗時のメッセージに含めるstderrの行数
_STDERR_TAIL_LINES = 20

# SIGTERMからSIGKILLまでの猶予（秒）
_KILL_GRACE_SECONDS = 5.0

# 1行あたりの最大バイト数
_STREAM_LIMIT = 1024 * 1024


class ProcessResult(BaseModel):
    """外部プロセスの実行結果。"""

    args: list[str]
    exit_code: int
    output: str = ""
    stderr_tail: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """子プロセスのプロセスグループ全体にシグナルを送る。"""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


class ProcessHandle:
    """実行中の子プロセスへの参照。

    デプロイセッションが1つずつ保持し、クライアント切断時に `cancel()` で
    実行中の子プロセスを終了させる。キャンセル後に起動されたプロセスも即座に終了させる。
    """

    def __init__(self, kill_grace: float = _KILL_GRACE_SECONDS) -> None:
        self._process: asyncio.subprocess.Process | None = None
        self._cancelled = False
        self._kill_grace = kill_grace

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        if self._cancelled:
            self._terminate(process)

    def detach(self, process: asyncio.subprocess.Process) -> None:
        if self._process is process:
            self._process = None

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._process is not None:
            self._terminate(self._process)

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        _signal_group(process, signal.SIGTERM)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self._kill_grace, _signal_group, process, signal.SIGKILL)


async def _pump(stream: asyncio.StreamReader | None, forward: Callable[[str, bool], None], is_stderr: bool) -> None:
    if stream is None:
        return
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            forward("[output line too long, truncated]\n", is_stderr)
            continue
        if not line:
            return
        forward(line.decode("utf-8", errors="replace"), is_stderr)


class ProcessRunner:
    """外部コマンドを起動し、stdout/stderrを1本のテキストストリームとして転送する。"""

    def __init__(self, default_timeout: float | None = None) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputSink | None = None,
        handle: ProcessHandle | None = None,
        capture: bool = False,
        check: bool = True,
        timeout: float | None = None,
    ) -> ProcessResult:
        """コマンドを実行し、終了を待つ。

        Args:
            args: 実行するコマンドと引数のリスト。
            cwd: 作業ディレクトリ。
            env: 現在の環境変数に上書きする追加の環境変数。
            on_output: 出力チャンク（行単位）を受け取るコールバック。stdout/stderrの順序はベストエフォート。
            handle: キャンセル用のハンドル。
            capture: stdoutを結果の `output` に保持するか。
            check: 0以外の終了コードで例外を送出するか。
            timeout: 制限時間（秒）。Noneの場合はデフォルト値（未設定なら無制限）。

        Returns:
            実行結果。

        Raises:
            DeploymentCancelledError: ハンドル経由でキャンセルされた場合。
            ProcessTimeoutError: 制限時間を超えた場合。
            ProcessFailedError: 起動できなかった場合、またはcheck=Trueで0以外で終了した場合。
        """
        argv = [str(a) for a in args]
        command = shlex.join(argv)
        merged_env = {**os.environ, **env} if env else None

        if handle is not None and handle.cancelled:
            raise DeploymentCancelledError()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessFailedError(command, 127, f"{argv[0]}: {e.strerror or e}") from e

        if handle is not None:
            handle.attach(process)

        captured: list[str] = []
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        def forward(chunk: str, is_stderr: bool) -> None:
            logger.debug("[%s:%d] %s", argv[0], process.pid, chunk.rstrip("\n"))
            if is_stderr:
                stderr_tail.append(chunk)
            elif capture:
                captured.append(chunk)
            if on_output is not None:
                on_output(chunk)

        async def communicate() -> None:
            await asyncio.gather(
                _pump(process.stdout, forward, False),
                _pump(process.stderr, forward, True),
            )
            await process.wait()

        effective_timeout = timeout if timeout is not None else self._default_timeout
        try:
            await asyncio.wait_for(communicate(), effective_timeout)
        except TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()
            raise ProcessTimeoutError(command, effective_timeout or 0) from None
        except asyncio.CancelledError:
            _signal_group(process, signal.SIGKILL)
            raise
        finally:
            if handle is not None:
                handle.detach(process)

        exit_code = process.returncode if process.returncode is not None else -1
        result = ProcessResult(
            args=argv,
            exit_code=exit_code,
            output="".join(captured),
            stderr_tail="".join(stderr_tail),
        )
        if exit_code != 0:
            if handle is not None and handle.cancelled:
                raise DeploymentCancelledError()
            if check:
                raise ProcessFailedError(command, exit_code, result.stderr_tail)
        return result

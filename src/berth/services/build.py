"""依存関係のインストールとビルドスクリプトの実行。"""

import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path

from berth.models.errors import BuildStepFailedError, ProcessFailedError
from berth.services.process import OutputSink, ProcessHandle, ProcessRunner

DEFAULT_INSTALL_COMMAND = ("npm", "install")
DEFAULT_BUILD_COMMAND = ("npm", "run", "build")


def _last_line(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[-1].strip() if lines else ""


class BuildPipeline:
    """install → build の2ステップを直列に実行する。失敗したステップはリトライしない。"""

    def __init__(
        self,
        runner: ProcessRunner,
        install_command: Sequence[str] = DEFAULT_INSTALL_COMMAND,
        build_command: Sequence[str] = DEFAULT_BUILD_COMMAND,
        timeout: float | None = None,
    ) -> None:
        self._runner = runner
        self._steps: list[tuple[str, list[str]]] = [
            ("install", list(install_command)),
            ("build", list(build_command)),
        ]
        self._timeout = timeout

    @property
    def steps(self) -> list[tuple[str, list[str]]]:
        return [(name, list(args)) for name, args in self._steps]

    async def build(
        self,
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
        on_output: OutputSink | None = None,
        handle: ProcessHandle | None = None,
    ) -> bool:
        """各ステップを順に実行する。

        ステップ開始前にキャンセルされていれば、そのステップは実行せずに戻る。
        キャンセルはこの層ではエラーとして扱わない。

        Returns:
            すべてのステップを実行した場合はTrue、キャンセルで打ち切った場合はFalse。

        Raises:
            BuildStepFailedError: いずれかのステップが失敗した場合。
            DeploymentCancelledError: ステップ実行中にキャンセルされた場合。
        """
        for step, args in self._steps:
            if handle is not None and handle.cancelled:
                return False
            if on_output is not None:
                on_output(f"$ {shlex.join(args)}\n")
            try:
                await self._runner.run(
                    args,
                    cwd=cwd,
                    env=env,
                    on_output=on_output,
                    handle=handle,
                    timeout=self._timeout,
                )
            except ProcessFailedError as e:
                raise BuildStepFailedError(step, e.exit_code, _last_line(e.stderr)) from e
        return True

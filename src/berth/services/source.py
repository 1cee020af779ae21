"""gitリポジトリの取得。"""

import re
from pathlib import Path

from berth.models.errors import CloneFailedError, CommitResolutionFailedError, ProcessFailedError
from berth.services.process import OutputSink, ProcessHandle, ProcessRunner

_COMMIT_RE = re.compile(r"^[0-9a-f]{7,64}$")


class SourceFetcher:
    """指定ブランチを浅くクローンし、チェックアウトしたコミットを解決する。"""

    def __init__(self, runner: ProcessRunner, git_binary: str = "git", timeout: float | None = None) -> None:
        self._runner = runner
        self._git = git_binary
        self._timeout = timeout

    async def fetch(
        self,
        repo_url: str,
        branch: str,
        dest: Path,
        *,
        on_output: OutputSink | None = None,
        handle: ProcessHandle | None = None,
    ) -> str:
        """`depth=1` の単一ブランチクローンを行い、HEADのコミットハッシュを返す。

        Raises:
            CloneFailedError: クローンが失敗した場合。
            CommitResolutionFailedError: クローン後にHEADを解決できなかった場合。
            DeploymentCancelledError: 実行中にキャンセルされた場合。
        """
        clone_args = [
            self._git,
            "clone",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            branch,
            repo_url,
            str(dest),
        ]
        try:
            await self._runner.run(
                clone_args,
                env={"GIT_TERMINAL_PROMPT": "0"},
                on_output=on_output,
                handle=handle,
                timeout=self._timeout,
            )
        except ProcessFailedError as e:
            raise CloneFailedError(repo_url, branch, e.exit_code, e.stderr.strip()) from e

        try:
            result = await self._runner.run(
                [self._git, "-C", str(dest), "rev-parse", "HEAD"],
                handle=handle,
                capture=True,
                timeout=self._timeout,
            )
        except ProcessFailedError as e:
            raise CommitResolutionFailedError(str(e)) from e

        commit = result.output.strip()
        if not _COMMIT_RE.match(commit):
            raise CommitResolutionFailedError(f"unexpected rev-parse output: {commit!r}")
        return commit

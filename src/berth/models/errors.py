"""Berthのカスタム例外クラス。"""

from pathlib import PurePath


class BerthError(Exception):
    """Berthの基底例外クラス。"""


class ValidationFailedError(BerthError):
    """リクエストの検証に失敗した場合の例外。副作用が発生する前に送出される。"""


class StorageError(BerthError):
    """ストレージ操作のエラー。"""


class ProcessFailedError(BerthError):
    """外部プロセスが0以外の終了コードで終了した場合の例外。"""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        detail = stderr.strip() or f"{command} exited with code {exit_code}"
        super().__init__(detail)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessTimeoutError(ProcessFailedError):
    """外部プロセスが制限時間内に終了しなかった場合の例外。"""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(command, -1, f"{command} timed out after {timeout:g}s")
        self.timeout = timeout


class DeploymentCancelledError(BerthError):
    """クライアント切断によりデプロイが中断された場合の例外。

    エラーではなく正常な終端状態として扱う。
    """

    def __init__(self) -> None:
        super().__init__("Deployment cancelled by client.")


class CloneFailedError(BerthError):
    """git clone に失敗した場合の例外。"""

    def __init__(self, repo_url: str, branch: str, exit_code: int, detail: str = "") -> None:
        message = f"git clone of {repo_url} ({branch}) failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.repo_url = repo_url
        self.branch = branch
        self.exit_code = exit_code


class CommitResolutionFailedError(BerthError):
    """クローン成功後にHEADコミットを解決できなかった場合の例外。"""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Could not resolve checked out commit: {detail}")


class BuildStepFailedError(BerthError):
    """ビルドステップ（install / build）が失敗した場合の例外。"""

    def __init__(self, step: str, exit_code: int, detail: str = "") -> None:
        message = f"{step} step failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code


class ArtifactMissingError(BerthError):
    """ビルド成果物ディレクトリが存在しない場合の例外。"""

    def __init__(self, path: str) -> None:
        super().__init__(f"{PurePath(path).name} directory not found at {path}")
        self.path = path


class ContainerEngineError(BerthError):
    """コンテナエンジンの操作に失敗した場合の例外。"""

    def __init__(self, operation: str, exit_code: int, stderr: str = "") -> None:
        message = f"Container engine {operation} failed with exit code {exit_code}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr


class ContainerNotManagedError(BerthError):
    """管理プレフィックスを持たないコンテナへの操作を拒否する例外。"""

    def __init__(self, container: str) -> None:
        super().__init__(f"Container {container} is not managed by this service")
        self.container = container


class ContainerVanishedError(BerthError):
    """操作中にコンテナが消えた場合の例外。"""

    def __init__(self, container: str) -> None:
        super().__init__(f"Container {container} not found.")
        self.container = container


class SettingsNotFoundError(BerthError):
    """アプリ設定が存在しない場合の例外。"""

    def __init__(self, app: str) -> None:
        super().__init__(f"Settings not found for app: {app}")
        self.app = app

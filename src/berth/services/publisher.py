"""ビルド成果物の配置と配信コンテナの更新。"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from urllib.parse import quote, urlparse, urlunparse

from berth.config import ServerConfig
from berth.models.deploy import PublishResult
from berth.models.errors import ArtifactMissingError, ValidationFailedError
from berth.services.engine import APP_LABEL, ContainerEngine
from berth.services.process import OutputSink

logger = logging.getLogger(__name__)


def public_url(base_url: str, app_name: str) -> str | None:
    """ベースURLにアプリ名をパスセグメントとして連結する。

    ベースURLが未設定、またはURLとして不正な場合はNoneを返す。
    """
    base_url = base_url.strip()
    if not base_url:
        return None
    parsed = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    path = f"{parsed.path.rstrip('/')}/{quote(app_name)}"
    return urlunparse(parsed._replace(path=path, params="", query="", fragment=""))


def replace_directory(src: Path, dest: Path) -> int:
    """`dest` を削除して作り直し、`src` 配下の通常ファイルをディレクトリ構造ごとコピーする。

    シンボリックリンクやソケットなど通常ファイル以外はコピーしない。

    Returns:
        コピーしたファイル数。
    """
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    elif dest.exists():
        shutil.rmtree(dest)
    dest.mkdir(parents=True)

    copied = 0
    for root, _dirs, files in os.walk(src):
        root_path = Path(root)
        target_dir = dest / root_path.relative_to(src)
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in files:
            source = root_path / name
            if source.is_symlink() or not source.is_file():
                continue
            shutil.copy2(source, target_dir / name)
            copied += 1
    return copied


class Publisher:
    """成果物ディレクトリを `output_root/<app>` に配置し、nginxコンテナを作り直す。"""

    def __init__(self, engine: ContainerEngine, config: ServerConfig) -> None:
        self._engine = engine
        self._config = config
        self._output_root = config.output_root.resolve()

    def container_name(self, app_name: str) -> str:
        return f"{self._config.container_prefix}{app_name}"

    def artifact_dir(self, app_name: str) -> Path:
        """アプリの成果物ディレクトリ。

        Raises:
            ValidationFailedError: アプリ名が単一のパスセグメントでない場合。
        """
        # ディレクトリトラバーサル防止
        if app_name in ("", ".", "..") or Path(app_name).name != app_name:
            raise ValidationFailedError(f"Invalid app name: {app_name}")
        return self._output_root / app_name

    def public_url(self, app_name: str) -> str | None:
        return public_url(self._config.public_base_url, app_name)

    async def publish(
        self,
        app_name: str,
        build_output: Path,
        *,
        on_output: OutputSink | None = None,
    ) -> PublishResult:
        """ビルド成果物を公開する。

        Args:
            app_name: アプリ名。
            build_output: ビルド成果物ディレクトリ（例: `<project>/dist`）。
            on_output: 進捗メッセージを受け取るコールバック。

        Returns:
            コンテナ名・状態・公開URL。

        Raises:
            ArtifactMissingError: 成果物ディレクトリが存在しない場合。
            ContainerEngineError: コンテナの削除・作成に失敗した場合。
            ValidationFailedError: アプリ名が単一のパスセグメントでない場合。
        """

        def emit(message: str) -> None:
            if on_output is not None:
                on_output(f"{message}\n")

        if not await asyncio.to_thread(build_output.is_dir):
            raise ArtifactMissingError(str(build_output))

        dest = self.artifact_dir(app_name)
        emit(f"Copying build output to {dest}")
        copied = await asyncio.to_thread(replace_directory, build_output, dest)
        emit(f"Copied {copied} files")

        container = self.container_name(app_name)
        emit(f"Replacing container {container}")
        await self._engine.remove(container)
        network = self._config.proxy_network or None
        container_id = await self._engine.run_static(
            container,
            dest,
            self._config.serve_image,
            network=network,
            labels={APP_LABEL: app_name},
        )
        emit(f"Started container {container} ({container_id[:12] or 'unknown id'})")
        logger.info("Published %s to %s as %s", app_name, dest, container)

        return PublishResult(container=container, status="running", url=self.public_url(app_name))

    async def purge(self, app_name: str) -> bool:
        """公開済みの成果物ディレクトリを削除する。存在しなかった場合はFalse。"""
        dest = self.artifact_dir(app_name)
        if not dest.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, dest)
        return True

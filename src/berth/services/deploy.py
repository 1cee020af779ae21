"""デプロイのオーケストレーション（clone → build → publish）。"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from berth.config import ServerConfig
from berth.models.app import AppInfo
from berth.models.common import format_validation_error, utc_now
from berth.models.deploy import DeployConfig, DeployRequest, DeploymentStatus
from berth.models.errors import (
    ArtifactMissingError,
    BerthError,
    DeploymentCancelledError,
    SettingsNotFoundError,
    StorageError,
    ValidationFailedError,
)
from berth.models.history import DeploymentEvent
from berth.models.settings import env_to_text, parse_env_text
from berth.services.build import BuildPipeline
from berth.services.publisher import Publisher
from berth.services.session import DeploymentSession
from berth.services.source import SourceFetcher
from berth.services.workspace import WorkspaceManager
from berth.storage.history import HistoryStore
from berth.storage.pending import PendingAppStore
from berth.storage.settings import SettingsStore

logger = logging.getLogger(__name__)

CLONE_MARKER = "== Git clone/update =="
BUILD_MARKER = "== Build with Node (docker) =="
PUBLISH_MARKER = "== Publish with Nginx =="

COMPLETE_LINE = "Deployment complete."
CANCELLED_LINE = "Deployment cancelled by client."


def parse_deploy_request(payload: Any) -> DeployRequest:
    """リクエストボディを検証してDeployRequestに変換する。

    Raises:
        ValidationFailedError: ボディがオブジェクトでない、または値が不正な場合。
    """
    if not isinstance(payload, dict):
        raise ValidationFailedError("Request body must be a JSON object")
    try:
        return DeployRequest.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailedError(format_validation_error(e)) from e


class DeploymentOrchestrator:
    """デプロイセッションを1件ずつ独立したタスクとして実行する。

    セッションはHTTPレスポンスとは別のタスクで動くため、クライアントが切断しても
    後片付けと履歴の書き込みは最後まで実行される。
    """

    def __init__(
        self,
        *,
        fetcher: SourceFetcher,
        pipeline: BuildPipeline,
        publisher: Publisher,
        workspaces: WorkspaceManager,
        history: HistoryStore,
        pending: PendingAppStore,
        config: ServerConfig,
        settings: SettingsStore | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._pipeline = pipeline
        self._publisher = publisher
        self._workspaces = workspaces
        self._history = history
        self._pending = pending
        self._settings = settings
        self._config = config
        self._publish_locks: dict[str, asyncio.Lock] = {}
        self._sessions: dict[str, DeploymentSession] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_sessions(self) -> list[DeploymentSession]:
        return list(self._sessions.values())

    def _get_publish_lock(self, app: str) -> asyncio.Lock:
        """アプリ単位のasyncio.Lockを取得する。"""
        if app not in self._publish_locks:
            self._publish_locks[app] = asyncio.Lock()
        return self._publish_locks[app]

    def _publish_guard(self, app: str) -> AbstractAsyncContextManager[Any]:
        if not self._config.serialize_publish:
            return contextlib.nullcontext()
        return self._get_publish_lock(app)

    def start(self, request: DeployRequest) -> DeploymentSession:
        """セッションを作成し、パイプラインをバックグラウンドで開始する。"""
        session = DeploymentSession(request, log_limit=self._config.log_limit)
        self._sessions[session.id] = session
        task = asyncio.create_task(self.run(session), name=f"deploy-{request.name}-{session.id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "Accepted deployment %s for %s (%s@%s)", session.id, request.name, request.repo_url, request.branch
        )
        return session

    async def stream(self, session: DeploymentSession) -> AsyncIterator[str]:
        """セッションの出力を順に返す。途中で閉じられた場合はセッションをキャンセルする。"""
        try:
            async for chunk in session.chunks():
                yield chunk
        finally:
            if not session.finished:
                logger.info("Client disconnected from deployment %s; cancelling", session.id)
                session.cancel()

    async def run(self, session: DeploymentSession) -> None:
        """状態遷移 idle → cloning → building → publishing → done を実行する。

        どの終端状態に至った場合でも、作業ディレクトリを削除し、
        履歴イベントを1件だけ書き込んでからセッションを終了する。
        """
        outcome: DeploymentStatus = "failed"
        error: str | None = None
        try:
            self._announce(session)
            async with self._workspaces.workspace() as workspace:
                session.workspace = workspace
                await self._execute(session, workspace)
            outcome = "success"
        except DeploymentCancelledError:
            outcome = "cancelled"
            error = CANCELLED_LINE
        except BerthError as e:
            if session.cancelled:
                outcome = "cancelled"
                error = CANCELLED_LINE
            else:
                error = str(e)
                logger.warning("Deployment %s for %s failed: %s", session.id, session.app, error)
        except asyncio.CancelledError:
            session.cancel()
            outcome = "cancelled"
            error = CANCELLED_LINE
            raise
        except Exception as e:
            logger.exception("Unexpected error in deployment %s for %s", session.id, session.app)
            error = str(e) or e.__class__.__name__
        finally:
            await self._complete(session, outcome, error)

    def _announce(self, session: DeploymentSession) -> None:
        request = session.request
        session.emit(f"Starting deployment for {request.name}")
        session.emit(f"Repository: {request.repo_url}")
        session.emit(f"Branch: {request.branch}")
        if request.framework:
            session.emit(f"Framework: {request.framework}")
        if request.app_path:
            session.emit(f"App Path: {request.app_path}")

    @staticmethod
    def _check_cancelled(session: DeploymentSession) -> None:
        if session.cancelled:
            raise DeploymentCancelledError()

    async def _execute(self, session: DeploymentSession, workspace: Path) -> None:
        request = session.request

        self._check_cancelled(session)
        session.step = "cloning"
        session.emit(CLONE_MARKER)
        source_dir = workspace / "source"
        commit = await self._fetcher.fetch(
            request.repo_url,
            request.branch,
            source_dir,
            on_output=session.emit,
            handle=session.process,
        )
        session.set_commit(commit)
        session.emit(f"Checked out commit: {session.commit}")

        self._check_cancelled(session)
        session.step = "building"
        session.emit(BUILD_MARKER)
        project_dir = source_dir / request.app_path if request.app_path else source_dir
        if not await asyncio.to_thread(project_dir.is_dir):
            raise ArtifactMissingError(str(project_dir))
        completed = await self._pipeline.build(
            project_dir,
            env=parse_env_text(request.variables),
            on_output=session.emit,
            handle=session.process,
        )
        if not completed:
            raise DeploymentCancelledError()

        self._check_cancelled(session)
        session.step = "publishing"
        session.emit(PUBLISH_MARKER)
        async with self._publish_guard(request.name):
            self._check_cancelled(session)
            result = await self._publisher.publish(
                request.name,
                project_dir / self._config.build_output_dir,
                on_output=session.emit,
            )

        self._pending.upsert(
            AppInfo(
                name=request.name,
                container=result.container,
                state="running",
                status="Up (just deployed)",
                url=result.url,
                repo_url=request.repo_url,
                branch=request.branch,
                framework=request.framework,
                last_deployed_at=utc_now(),
            )
        )
        if result.url:
            session.emit(f"Available at {result.url}")

    async def _complete(self, session: DeploymentSession, outcome: DeploymentStatus, error: str | None) -> None:
        request = session.request
        if outcome == "success":
            session.emit(COMPLETE_LINE)
        elif outcome == "cancelled":
            session.emit(CANCELLED_LINE)
        else:
            session.emit(f"Deployment failed: {error}")

        session.completed_at = utc_now()
        event = DeploymentEvent(
            id=session.id,
            app=request.name,
            container=self._publisher.container_name(request.name),
            repo_url=request.repo_url,
            branch=request.branch,
            framework=request.framework,
            commit=session.commit,
            status=outcome,
            started_at=session.started_at,
            completed_at=session.completed_at,
            duration_ms=session.duration_ms,
            message=error if outcome != "success" else None,
        )
        await self._history.record(event)

        if outcome == "success":
            await self._remember_settings(session)

        logger.info("Deployment %s for %s finished: %s (%d ms)", session.id, request.name, outcome, event.duration_ms)
        session.finish(outcome, error if outcome != "success" else None)
        self._sessions.pop(session.id, None)

    async def _remember_settings(self, session: DeploymentSession) -> None:
        if self._settings is None:
            return
        request = session.request
        try:
            await self._settings.save(
                request.name,
                {
                    "repoUrl": request.repo_url,
                    "branch": request.branch,
                    "framework": request.framework,
                    "appPath": request.app_path,
                    "lastCommit": session.commit,
                    "lastDeployedAt": session.completed_at.isoformat() if session.completed_at else None,
                },
            )
        except (StorageError, ValidationFailedError, OSError):
            logger.warning("Failed to update settings for %s after deployment", request.name, exc_info=True)

    async def deploy_config(self, app: str) -> DeployConfig:
        """保存済みの設定から再デプロイ用の入力値を組み立てる。

        Raises:
            SettingsNotFoundError: 設定がない、またはリポジトリが記録されていない場合。
        """
        settings = await self._settings.get(app) if self._settings is not None else None
        if settings is None or not settings.repo_url:
            raise SettingsNotFoundError(app)
        return DeployConfig(
            name=app,
            repo_url=settings.repo_url,
            branch=settings.branch or "main",
            framework=settings.framework,
            app_path=settings.app_path,
            variables=env_to_text(settings.public_env) or None,
            domain=settings.domain,
        )

    async def drain(self) -> None:
        """実行中のセッションをすべてキャンセルし、後片付けの完了を待つ。"""
        for session in self.active_sessions:
            session.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

"""DeploymentOrchestratorのユニットテスト。

ビルドは実際の子プロセス（sys.executable）で実行し、git・コンテナエンジンはフェイクを使う。
"""

import asyncio
import sys
from pathlib import Path

import pytest

from berth.config import ServerConfig
from berth.models.deploy import DeployRequest
from berth.models.errors import SettingsNotFoundError
from berth.models.history import DeploymentEvent
from berth.services.build import BuildPipeline
from berth.services.deploy import (
    BUILD_MARKER,
    CLONE_MARKER,
    PUBLISH_MARKER,
    DeploymentOrchestrator,
)
from berth.services.process import ProcessRunner
from berth.services.publisher import Publisher
from berth.services.session import DeploymentSession
from berth.services.workspace import WorkspaceManager
from berth.storage.history import HistoryStore
from berth.storage.pending import PendingAppStore
from berth.storage.settings import SettingsStore


def _request(**overrides: object) -> DeployRequest:
    payload = {"name": "demo", "repoUrl": "https://example.com/repo.git", "branch": "main", **overrides}
    return DeployRequest.model_validate(payload)


async def _run(orchestrator: DeploymentOrchestrator, request: DeployRequest) -> tuple[DeploymentSession, list[str]]:
    session = orchestrator.start(request)
    output = "".join([chunk async for chunk in orchestrator.stream(session)])
    return session, output.splitlines()


def _with_build(
    build_command: list[str],
    fake_fetcher,
    publisher: Publisher,
    history_store: HistoryStore,
    pending_store: PendingAppStore,
    server_config: ServerConfig,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        fetcher=fake_fetcher,
        pipeline=BuildPipeline(ProcessRunner(), [sys.executable, "-c", "pass"], build_command),
        publisher=publisher,
        workspaces=WorkspaceManager(server_config.workspace_root),
        history=history_store,
        pending=pending_store,
        config=server_config,
    )


def _workspaces_left(server_config: ServerConfig) -> list[Path]:
    assert server_config.workspace_root is not None
    if not server_config.workspace_root.exists():
        return []
    return list(server_config.workspace_root.iterdir())


class TestSuccessfulDeployment:
    async def test_stream_history_and_pending(
        self,
        orchestrator: DeploymentOrchestrator,
        history_store: HistoryStore,
        pending_store: PendingAppStore,
        server_config: ServerConfig,
    ) -> None:
        session, lines = await _run(orchestrator, _request())

        assert lines[:3] == [
            "Starting deployment for demo",
            "Repository: https://example.com/repo.git",
            "Branch: main",
        ]
        assert lines.index(CLONE_MARKER) < lines.index(f"Checked out commit: {'a' * 40}") < lines.index(BUILD_MARKER)
        assert lines.index(BUILD_MARKER) < lines.index(PUBLISH_MARKER)
        assert lines[-1] == "Deployment complete."
        assert sum(line.startswith("Deployment ") for line in lines) == 1

        assert session.outcome == "success"
        (event,) = await history_store.list_events()
        assert isinstance(event, DeploymentEvent)
        assert event.id == session.id
        assert event.status == "success"
        assert event.commit == "a" * 40
        assert event.container == "static_demo"
        expected_ms = (event.completed_at - event.started_at).total_seconds() * 1000
        assert abs(event.duration_ms - expected_ms) <= 5

        pending = pending_store.get("demo")
        assert pending is not None
        assert pending.state == "running"
        assert pending.url == "https://apps.example.com/demo"

        published = server_config.output_root.resolve() / "demo"
        assert (published / "index.html").read_text(encoding="utf-8") == "<h1>ok</h1>"
        assert (published / "assets" / "app.js").exists()
        assert _workspaces_left(server_config) == []

    async def test_settings_remember_last_deploy(
        self, orchestrator: DeploymentOrchestrator, settings_store: SettingsStore
    ) -> None:
        await _run(orchestrator, _request(framework="vite", appPath="web"))

        settings = await settings_store.get("demo")
        assert settings is not None
        assert settings.repo_url == "https://example.com/repo.git"
        assert settings.framework == "vite"
        assert settings.app_path == "web"
        assert settings.last_commit == "a" * 40
        assert settings.last_deployed_at is not None

        config = await orchestrator.deploy_config("demo")
        assert config.repo_url == "https://example.com/repo.git"
        assert config.app_path == "web"

    async def test_app_path_builds_subdirectory(
        self, orchestrator: DeploymentOrchestrator, fake_fetcher, server_config: ServerConfig
    ) -> None:
        session, lines = await _run(orchestrator, _request(appPath="web"))

        assert "App Path: web" in lines
        assert session.outcome == "success"
        assert (server_config.output_root.resolve() / "demo" / "index.html").exists()

    async def test_concurrent_deploys_of_same_app(
        self, orchestrator: DeploymentOrchestrator, history_store: HistoryStore, fake_engine
    ) -> None:
        results = await asyncio.gather(_run(orchestrator, _request()), _run(orchestrator, _request()))

        assert [session.outcome for session, _ in results] == ["success", "success"]
        assert len(await history_store.list_events(app="demo")) == 2
        assert "static_demo" in fake_engine.containers


class TestFailedDeployment:
    async def test_clone_failure(
        self,
        orchestrator: DeploymentOrchestrator,
        fake_fetcher,
        history_store: HistoryStore,
        server_config: ServerConfig,
    ) -> None:
        fake_fetcher.fail = True

        session, lines = await _run(orchestrator, _request())

        assert BUILD_MARKER not in lines
        assert lines[-1].startswith("Deployment failed: git clone of https://example.com/repo.git")
        (event,) = await history_store.list_events()
        assert event.status == "failed"
        assert event.commit is None
        assert event.message == session.error
        assert _workspaces_left(server_config) == []

    async def test_missing_build_output(
        self,
        fake_fetcher,
        publisher: Publisher,
        history_store: HistoryStore,
        pending_store: PendingAppStore,
        server_config: ServerConfig,
        fake_engine,
    ) -> None:
        orchestrator = _with_build(
            [sys.executable, "-c", "print('no output produced')"],
            fake_fetcher,
            publisher,
            history_store,
            pending_store,
            server_config,
        )

        session, lines = await _run(orchestrator, _request())

        assert lines[-1].startswith("Deployment failed: dist directory not found at ")
        assert lines[-1].endswith(str(Path("source") / "dist"))
        (event,) = await history_store.list_events()
        assert event.status == "failed"
        assert event.message is not None and event.message.startswith("dist directory not found at ")
        assert pending_store.get("demo") is None
        assert fake_engine.runs == []

    async def test_failed_build_step(
        self,
        fake_fetcher,
        publisher: Publisher,
        history_store: HistoryStore,
        pending_store: PendingAppStore,
        server_config: ServerConfig,
    ) -> None:
        orchestrator = _with_build(
            [sys.executable, "-c", "import sys; sys.stderr.write('SyntaxError in main.ts\\n'); sys.exit(1)"],
            fake_fetcher,
            publisher,
            history_store,
            pending_store,
            server_config,
        )

        _, lines = await _run(orchestrator, _request())

        assert PUBLISH_MARKER not in lines
        assert "SyntaxError in main.ts" in lines
        assert lines[-1] == "Deployment failed: build step failed with exit code 1: SyntaxError in main.ts"

    async def test_missing_app_path(self, orchestrator: DeploymentOrchestrator, history_store: HistoryStore) -> None:
        _, lines = await _run(orchestrator, _request(appPath="nope"))

        assert lines[-1].startswith("Deployment failed: nope directory not found at ")
        (event,) = await history_store.list_events()
        assert event.status == "failed"


class TestCancelledDeployment:
    async def test_disconnect_mid_build(
        self,
        fake_fetcher,
        publisher: Publisher,
        history_store: HistoryStore,
        pending_store: PendingAppStore,
        server_config: ServerConfig,
        fake_engine,
    ) -> None:
        orchestrator = _with_build(
            [sys.executable, "-c", "import time; print('compiling', flush=True); time.sleep(60)"],
            fake_fetcher,
            publisher,
            history_store,
            pending_store,
            server_config,
        )
        session = orchestrator.start(_request())
        stream = orchestrator.stream(session)

        async for chunk in stream:
            if chunk == "compiling\n":
                break
        await stream.aclose()
        await asyncio.wait_for(orchestrator.drain(), 10)

        assert session.cancelled
        assert session.outcome == "cancelled"
        assert list(session.log)[-1] == "Deployment cancelled by client."
        (event,) = await history_store.list_events()
        assert event.status == "cancelled"
        assert event.commit == "a" * 40
        assert fake_engine.runs == []
        assert _workspaces_left(server_config) == []

    async def test_cancel_before_clone(
        self, orchestrator: DeploymentOrchestrator, fake_fetcher, history_store: HistoryStore
    ) -> None:
        session = orchestrator.start(_request())
        session.cancel()
        await orchestrator.drain()

        assert session.outcome == "cancelled"
        assert fake_fetcher.fetched == []
        (event,) = await history_store.list_events()
        assert event.status == "cancelled"


class TestDeployConfig:
    async def test_missing_settings(self, orchestrator: DeploymentOrchestrator) -> None:
        with pytest.raises(SettingsNotFoundError):
            await orchestrator.deploy_config("ghost")

    async def test_settings_without_repo(
        self, orchestrator: DeploymentOrchestrator, settings_store: SettingsStore
    ) -> None:
        await settings_store.save("demo", {"notes": "no repo yet"})
        with pytest.raises(SettingsNotFoundError):
            await orchestrator.deploy_config("demo")

    async def test_variables_rendered_from_public_env(
        self, orchestrator: DeploymentOrchestrator, settings_store: SettingsStore
    ) -> None:
        await settings_store.save(
            "demo",
            {"repoUrl": "https://example.com/repo.git", "publicEnv": {"API_URL": "https://api"}, "domain": "d.io"},
        )
        config = await orchestrator.deploy_config("demo")
        assert config.to_wire() == {
            "name": "demo",
            "repoUrl": "https://example.com/repo.git",
            "branch": "main",
            "variables": "API_URL=https://api",
            "domain": "d.io",
        }

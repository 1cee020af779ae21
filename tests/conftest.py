"""テスト共通フィクスチャ。"""

import sys
from collections.abc import Mapping
from pathlib import Path

import pytest

from berth.config import ServerConfig
from berth.models.app import EngineContainer
from berth.models.common import utc_now
from berth.models.errors import CloneFailedError, ContainerEngineError
from berth.services.build import BuildPipeline
from berth.services.deploy import DeploymentOrchestrator
from berth.services.inventory import ContainerInventory
from berth.services.process import OutputSink, ProcessHandle, ProcessRunner
from berth.services.publisher import Publisher
from berth.services.workspace import WorkspaceManager
from berth.storage.history import HistoryStore
from berth.storage.pending import PendingAppStore
from berth.storage.settings import SettingsStore

COMMIT = "a" * 40

INSTALL_COMMAND = [sys.executable, "-c", "print('installing dependencies')"]
BUILD_COMMAND = [
    sys.executable,
    "-c",
    "import os; os.makedirs('dist/assets', exist_ok=True); "
    "open('dist/index.html', 'w').write('<h1>ok</h1>'); "
    "open('dist/assets/app.js', 'w').write('console.log(1)'); "
    "print('build finished')",
]


class FakeEngine:
    """メモリ上でコンテナを管理するコンテナエンジン。"""

    def __init__(self) -> None:
        self.containers: dict[str, EngineContainer] = {}
        self.calls: list[tuple[str, str]] = []
        self.runs: list[dict[str, object]] = []
        # Trueの場合、作成したコンテナを一覧に出さない（エンジンの反映遅延）
        self.lagging = False
        self.hidden: set[str] = set()
        self.fail_list = False
        self.fail_operations: set[str] = set()

    def add(self, name: str, state: str = "running", status: str = "Up 5 minutes") -> None:
        self.containers[name] = EngineContainer(name=name, state=state, status=status, created_at=utc_now())

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise ContainerEngineError(operation, 1, f"simulated {operation} failure")

    async def list_containers(self, prefix: str) -> list[EngineContainer]:
        self.calls.append(("ps", prefix))
        if self.fail_list:
            raise ContainerEngineError("ps", 1, "Cannot connect to the Docker daemon")
        return [c for name, c in self.containers.items() if name.startswith(prefix) and name not in self.hidden]

    async def remove(self, name: str) -> bool:
        self.calls.append(("rm", name))
        self._check("rm")
        self.hidden.discard(name)
        return self.containers.pop(name, None) is not None

    async def run_static(
        self,
        name: str,
        content_dir: Path,
        image: str,
        *,
        network: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> str:
        self.calls.append(("run", name))
        self._check("run")
        self.runs.append({"name": name, "content_dir": content_dir, "image": image, "network": network})
        self.add(name, state="running", status="Up Less than a second")
        if self.lagging:
            self.hidden.add(name)
        return "0123456789abcdef0123"

    async def _set_state(self, operation: str, name: str, state: str, status: str) -> None:
        self.calls.append((operation, name))
        self._check(operation)
        if name not in self.containers:
            raise ContainerEngineError(operation, 1, f"Error response from daemon: No such container: {name}")
        self.add(name, state=state, status=status)

    async def start(self, name: str) -> None:
        await self._set_state("start", name, "running", "Up 1 second")

    async def stop(self, name: str) -> None:
        await self._set_state("stop", name, "exited", "Exited (0) 1 second ago")

    async def restart(self, name: str) -> None:
        await self._set_state("restart", name, "running", "Up 1 second")


class FakeFetcher:
    """gitの代わりにプロジェクトの雛形を書き出すソース取得。"""

    def __init__(self, commit: str = COMMIT) -> None:
        self.commit = commit
        self.fail = False
        self.fetched: list[tuple[str, str, Path]] = []

    async def fetch(
        self,
        repo_url: str,
        branch: str,
        dest: Path,
        *,
        on_output: OutputSink | None = None,
        handle: ProcessHandle | None = None,
    ) -> str:
        self.fetched.append((repo_url, branch, dest))
        if on_output is not None:
            on_output(f"Cloning into '{dest}'...\n")
        if self.fail:
            raise CloneFailedError(repo_url, branch, 128, "fatal: repository not found")
        (dest / "web").mkdir(parents=True)
        (dest / "package.json").write_text('{"name": "demo"}', encoding="utf-8")
        (dest / "web" / "package.json").write_text('{"name": "web"}', encoding="utf-8")
        return self.commit


@pytest.fixture
def server_config(tmp_path: Path) -> ServerConfig:
    """テスト用ServerConfig。"""
    return ServerConfig(
        data_dir=tmp_path / "data",
        output_root=tmp_path / "deployments",
        workspace_root=tmp_path / "workspaces",
        public_base_url="https://apps.example.com",
        install_command=INSTALL_COMMAND,
        build_command=BUILD_COMMAND,
    )


@pytest.fixture
def history_store(server_config: ServerConfig) -> HistoryStore:
    return HistoryStore(server_config.history_file)


@pytest.fixture
def settings_store(server_config: ServerConfig) -> SettingsStore:
    return SettingsStore(server_config.settings_file)


@pytest.fixture
def pending_store() -> PendingAppStore:
    return PendingAppStore()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def publisher(fake_engine: FakeEngine, server_config: ServerConfig) -> Publisher:
    return Publisher(fake_engine, server_config)  # type: ignore[arg-type]


@pytest.fixture
def inventory(
    fake_engine: FakeEngine,
    publisher: Publisher,
    pending_store: PendingAppStore,
    history_store: HistoryStore,
    settings_store: SettingsStore,
    server_config: ServerConfig,
) -> ContainerInventory:
    return ContainerInventory(
        fake_engine,  # type: ignore[arg-type]
        publisher,
        pending_store,
        history_store,
        server_config,
        settings=settings_store,
    )


@pytest.fixture
def orchestrator(
    fake_fetcher: FakeFetcher,
    publisher: Publisher,
    history_store: HistoryStore,
    pending_store: PendingAppStore,
    settings_store: SettingsStore,
    server_config: ServerConfig,
) -> DeploymentOrchestrator:
    """実際のサブプロセスでビルドし、git・コンテナエンジンはフェイクを使うオーケストレータ。"""
    return DeploymentOrchestrator(
        fetcher=fake_fetcher,  # type: ignore[arg-type]
        pipeline=BuildPipeline(
            ProcessRunner(),
            install_command=server_config.install_command,
            build_command=server_config.build_command,
        ),
        publisher=publisher,
        workspaces=WorkspaceManager(server_config.workspace_root),
        history=history_store,
        pending=pending_store,
        config=server_config,
        settings=settings_store,
    )

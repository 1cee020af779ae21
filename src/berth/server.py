"""Starlette ベースのHTTP APIサーバー。"""

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import BaseRoute, Mount, Route
from starlette.types import Receive, Scope, Send

from berth.config import ServerConfig
from berth.middleware import TokenAuthMiddleware
from berth.models.common import utc_now
from berth.models.errors import (
    BerthError,
    ContainerEngineError,
    ContainerNotManagedError,
    ContainerVanishedError,
    SettingsNotFoundError,
    ValidationFailedError,
)
from berth.services.build import BuildPipeline
from berth.services.deploy import DeploymentOrchestrator, parse_deploy_request
from berth.services.engine import ContainerEngine
from berth.services.inventory import ContainerInventory
from berth.services.process import ProcessRunner
from berth.services.publisher import Publisher
from berth.services.session import DeploymentSession
from berth.services.source import SourceFetcher
from berth.services.workspace import WorkspaceManager
from berth.storage.history import HistoryStore
from berth.storage.pending import PendingAppStore
from berth.storage.settings import SettingsStore

logger = logging.getLogger(__name__)

# 例外クラスとHTTPステータスの対応（上から順に判定）
_ERROR_STATUS: tuple[tuple[type[BerthError], int], ...] = (
    (ValidationFailedError, 400),
    (ContainerNotManagedError, 400),
    (SettingsNotFoundError, 404),
    (ContainerVanishedError, 404),
    (ContainerEngineError, 502),
)


def status_for(error: BerthError) -> int:
    for error_class, status in _ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 500


async def handle_berth_error(request: Request, exc: Exception) -> JSONResponse:
    status = status_for(exc) if isinstance(exc, BerthError) else 500
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=status)


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationFailedError("Request body must be valid JSON") from e


async def read_object(request: Request) -> dict[str, Any]:
    payload = await read_json(request)
    if not isinstance(payload, dict):
        raise ValidationFailedError("Request body must be a JSON object")
    return payload


class DeploymentStreamResponse(StreamingResponse):
    """デプロイの進捗をテキストで流すレスポンス。

    レスポンスが途中で終わった場合（クライアント切断）はセッションをキャンセルする。
    """

    def __init__(self, orchestrator: DeploymentOrchestrator, session: DeploymentSession) -> None:
        super().__init__(
            orchestrator.stream(session),
            media_type="text/plain; charset=utf-8",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Deployment-Id": session.id,
            },
        )
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if not self.session.finished:
                self.session.cancel()


def create_app(
    config: ServerConfig | None = None,
    *,
    runner: ProcessRunner | None = None,
    engine: ContainerEngine | None = None,
    fetcher: SourceFetcher | None = None,
    pipeline: BuildPipeline | None = None,
) -> Starlette:
    """Berth APIアプリケーションを作成し、ルートを登録する。

    Args:
        config: サーバー設定。Noneの場合はデフォルト設定を使用。
        runner: 外部プロセスの実行器。テストで差し替える場合に指定。
        engine: コンテナエンジン。テストで差し替える場合に指定。
        fetcher: ソース取得。テストで差し替える場合に指定。
        pipeline: ビルドパイプライン。テストで差し替える場合に指定。

    Returns:
        設定済みのStarletteインスタンス。
    """
    if config is None:
        config = ServerConfig()

    # データアクセス層
    history = HistoryStore(config.history_file)
    settings = SettingsStore(config.settings_file)
    pending = PendingAppStore()

    # サービス層
    runner = runner or ProcessRunner(default_timeout=config.step_timeout)
    engine = engine or ContainerEngine(runner, binary=config.container_engine, timeout=config.step_timeout)
    fetcher = fetcher or SourceFetcher(runner, git_binary=config.git_binary, timeout=config.step_timeout)
    pipeline = pipeline or BuildPipeline(
        runner,
        install_command=config.install_command,
        build_command=config.build_command,
        timeout=config.step_timeout,
    )
    publisher = Publisher(engine, config)
    inventory = ContainerInventory(engine, publisher, pending, history, config, settings=settings)
    orchestrator = DeploymentOrchestrator(
        fetcher=fetcher,
        pipeline=pipeline,
        publisher=publisher,
        workspaces=WorkspaceManager(config.workspace_root),
        history=history,
        pending=pending,
        config=config,
        settings=settings,
    )

    async def healthz(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "timestamp": utc_now().isoformat()})

    async def list_apps(request: Request) -> JSONResponse:
        apps = await inventory.list_apps()
        return JSONResponse({"apps": [app.to_wire() for app in apps]})

    async def deploy(request: Request) -> StreamingResponse:
        deploy_request = parse_deploy_request(await read_json(request))
        session = orchestrator.start(deploy_request)
        return DeploymentStreamResponse(orchestrator, session)

    async def container_action(request: Request) -> JSONResponse:
        payload = await read_object(request)
        action = payload.get("action")
        if not isinstance(action, str) or not action:
            raise ValidationFailedError("action is required")
        purge = payload.get("purge", False)
        if not isinstance(purge, bool):
            raise ValidationFailedError("purge must be a boolean")

        result = await inventory.act(request.path_params["container"], action, purge=purge)
        if result.removed:
            return JSONResponse({"ok": True, "removed": True, "purged": result.purged})
        return JSONResponse({"ok": True, "app": result.app.to_wire() if result.app else None})

    async def list_deployments(request: Request) -> JSONResponse:
        app = request.query_params.get("app") or None
        raw_limit = request.query_params.get("limit")
        limit: int | None = None
        if raw_limit:
            try:
                limit = int(raw_limit)
            except ValueError as e:
                raise ValidationFailedError("limit must be an integer") from e
            if limit < 0:
                raise ValidationFailedError("limit must not be negative")
        events = await history.list_events(app=app, limit=limit)
        return JSONResponse({"deployments": [event.to_wire() for event in events]})

    async def get_settings(request: Request) -> JSONResponse:
        name = request.path_params["name"]
        app_settings = await settings.get(name)
        if app_settings is None:
            raise SettingsNotFoundError(name)
        return JSONResponse({"settings": app_settings.to_wire()})

    async def put_settings(request: Request) -> JSONResponse:
        payload = await read_object(request)
        payload.pop("app", None)
        saved = await settings.save(request.path_params["name"], payload)
        return JSONResponse({"settings": saved.to_wire()})

    async def delete_settings(request: Request) -> JSONResponse:
        deleted = await settings.delete(request.path_params["name"])
        return JSONResponse({"ok": True, "deleted": deleted})

    async def deploy_config(request: Request) -> JSONResponse:
        config_view = await orchestrator.deploy_config(request.path_params["name"])
        return JSONResponse({"config": config_view.to_wire()})

    api_routes: list[BaseRoute] = [
        Route("/apps", list_apps, methods=["GET"]),
        Route("/deploy", deploy, methods=["POST"]),
        Route("/containers/{container}/action", container_action, methods=["POST"]),
        Route("/deployments", list_deployments, methods=["GET"]),
        Route("/apps/{name}/settings", get_settings, methods=["GET"]),
        Route("/apps/{name}/settings", put_settings, methods=["PUT"]),
        Route("/apps/{name}/settings", delete_settings, methods=["DELETE"]),
        Route("/apps/{name}/deploy-config", deploy_config, methods=["GET"]),
    ]

    # ヘルスチェックはプレフィックスの外に置く
    routes: list[BaseRoute] = [Route("/healthz", healthz, methods=["GET"])]
    prefix = config.api_prefix.rstrip("/")
    if prefix:
        routes.append(Mount(prefix, routes=api_routes))
    else:
        routes.extend(api_routes)

    middleware = []
    if config.api_token:
        middleware.append(Middleware(TokenAuthMiddleware, api_token=config.api_token))

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info(
            "Berth API ready (prefix=%r, engine=%s, output_root=%s)",
            prefix,
            config.container_engine,
            config.output_root,
        )
        yield
        await orchestrator.drain()

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={BerthError: handle_berth_error},
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.history = history
    app.state.settings = settings
    app.state.pending = pending
    app.state.inventory = inventory
    app.state.orchestrator = orchestrator
    return app

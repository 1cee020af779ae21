"""Berthサーバーの設定管理。"""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class ServerConfig(BaseSettings):
    """サーバー設定。環境変数（BERTH_ プレフィックス）から読み込み可能。"""

    model_config = {"env_prefix": "BERTH_"}

    host: str = "0.0.0.0"
    port: int = Field(default=4000, validation_alias=AliasChoices("BERTH_PORT", "API_PORT", "PORT", "port"))
    api_prefix: str = ""
    api_token: str = ""
    log_level: str = "INFO"

    # 永続化
    data_dir: Path = Path("data")
    output_root: Path = Path("deployments")
    workspace_root: Path | None = None

    # コンテナ
    container_engine: str = "docker"
    container_prefix: str = "static_"
    proxy_network: str = ""
    public_base_url: str = ""
    serve_image: str = "nginx:alpine"

    # ビルド
    git_binary: str = "git"
    install_command: list[str] = ["npm", "install"]
    build_command: list[str] = ["npm", "run", "build"]
    build_output_dir: str = "dist"
    step_timeout: float | None = None

    # デプロイセッション
    log_limit: int = 600
    serialize_publish: bool = True

    @property
    def history_file(self) -> Path:
        return self.data_dir / "deploy-history.json"

    @property
    def settings_file(self) -> Path:
        return self.data_dir / "settings.json"

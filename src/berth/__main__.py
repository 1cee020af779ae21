"""Berth APIサーバーのコマンドラインエントリポイント。"""

import logging

import uvicorn

from berth.config import ServerConfig
from berth.server import create_app

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def main() -> None:
    config = ServerConfig()
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()

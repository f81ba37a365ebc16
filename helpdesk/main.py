from __future__ import annotations

import asyncio
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.app import HelpDeskApp
from core.config import AppConfig, load_config
from core.logging import configure_logging


async def _serve(config: AppConfig) -> None:
    api = create_api_app(HelpDeskApp(config=config))
    server = uvicorn.Server(
        uvicorn.Config(
            app=api,
            host=config.server.host,
            port=config.server.port,
            log_level=config.logging.level.lower(),
            log_config=None,
        )
    )
    await server.serve()


def main() -> None:
    root = Path(__file__).resolve().parent
    config = load_config(root / "config" / "config.yaml")
    configure_logging(config.logging)
    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()

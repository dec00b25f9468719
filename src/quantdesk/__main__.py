"""``python -m quantdesk`` 진입점."""

from __future__ import annotations

import asyncio

import uvicorn

from .config.logging_setup import configure_logging
from .config.settings import get_settings
from .runtime.bootstrap import build_application


async def serve() -> None:
    # DB/Redis 연결은 만들어진 이벤트 루프에 묶인다.
    settings = get_settings()
    app = await build_application(settings)
    config = uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_config=None)
    await uvicorn.Server(config).serve()


def main() -> None:
    configure_logging(get_settings().log_level)
    asyncio.run(serve())


if __name__ == "__main__":
    main()

"""Command-line entrypoint for running the backfill proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import ProxySettings
from .app import create_app


def main() -> None:
    settings = ProxySettings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.bind_host, port=settings.port, log_config=None, proxy_headers=True)


if __name__ == "__main__":
    main()

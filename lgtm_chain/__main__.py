from __future__ import annotations

import argparse
import os

import uvicorn

from lgtm_chain.config import SERVICE_NAMES, get_settings
from lgtm_chain.main import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one service of the LGTM demo chain")
    parser.add_argument("service", nargs="?", choices=SERVICE_NAMES, help="Service to run (default: $SERVICE_NAME)")
    parser.add_argument("--host", default=None, help="Bind address (default: $HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: $PORT or the service's port)")
    args = parser.parse_args()

    if args.service:
        os.environ["SERVICE_NAME"] = args.service
        get_settings.cache_clear()
    settings = get_settings()

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.bind_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Server entrypoint: serve the mdtasks HTTP API.
Run with: python run.py [collection-path]
Or via the CLI: mdtasks serve --port 8081
"""
from __future__ import annotations

import logging
import os
import sys

from config import COLLECTION_ENV, load as load_config


def configure_logging(debug: bool = False) -> None:
    # App loggers (mdtasks.api, task_service, recurrence) emit to the same stream as uvicorn
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


def serve(collection_path: str | None = None, host: str = "0.0.0.0", port: int | None = None) -> None:
    """Run the web app (blocking). collection_path overrides the configured collection for this process."""
    config = load_config()
    configure_logging(config.debug)
    if collection_path:
        os.environ[COLLECTION_ENV] = collection_path

    import uvicorn
    logging.getLogger("mdtasks.api").info("Serving mdtasks API on %s:%s", host, port or config.web_ui_port)
    uvicorn.run(
        "web_app:app",
        host=host,
        port=port or config.web_ui_port,
        reload=False,
    )


def main() -> None:
    serve(sys.argv[1] if len(sys.argv) > 1 else None)


if __name__ == "__main__":
    main()

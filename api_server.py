#!/usr/bin/env python3
"""HTTP server exposing submit, status polling and queue introspection."""

import os

import uvicorn

from audiojobs_modules.api import create_app
from audiojobs_modules.config import logger
from audiojobs_modules.db import init_db
from audiojobs_modules.status.cache import get_status_cache, warn_if_process_local

init_db()
warn_if_process_local(get_status_cache(), component="api")
app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Запускаю API на порту {port}")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )

# server.py
"""
Run the store metrics API.

Usage:
    python server.py
    PORT=8080 STORE_METRICS_DB_PATH=/app/data.db python server.py
"""

import os

import uvicorn

from config import BASE_DIR, Settings, log


def main():
    settings = Settings.from_env()
    reload = os.getenv("RELOAD", "false").lower() == "true"

    log("Starting store metrics API...")
    log(f"  Host: {settings.host}:{settings.port}")
    log(f"  Database: {settings.db_path}")
    log(f"  Upload dir: {settings.upload_dir}")

    uvicorn.run(
        "api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=reload,
        app_dir=BASE_DIR,
    )


if __name__ == "__main__":
    main()

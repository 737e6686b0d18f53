"""
Serves the bundled single-page frontend next to the API.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse

logger = logging.getLogger(__name__)


def mount_frontend(app: FastAPI, static_dir: str, api_prefix: str = "/api") -> bool:
    """
    Register a catch-all GET route that serves files from ``static_dir`` and
    falls back to ``index.html`` for client-side routes. Must be called after
    the API router is included so API paths keep precedence.
    """
    root = Path(static_dir).resolve()
    index = root / "index.html"
    if not index.is_file():
        logger.warning("Static frontend not found at %s; not serving it", root)
        return False

    api_root = api_prefix.strip("/")

    @app.get("/{full_path:path}", include_in_schema=False)
    def frontend(full_path: str):
        if api_root and (full_path == api_root or full_path.startswith(api_root + "/")):
            raise HTTPException(status_code=404, detail="Not Found")
        if full_path:
            candidate = (root / full_path).resolve()
            if candidate.is_file() and root in candidate.parents:
                return FileResponse(candidate)
        return FileResponse(index)

    logger.info("Serving static frontend from %s", root)
    return True

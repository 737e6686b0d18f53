"""
Run the API server: ``python -m pdftools_backend``.
"""

from __future__ import annotations

import logging
import sys

import uvicorn

from pdftools_backend.app import create_app
from pdftools_backend.config import get_settings
from pdftools_backend.errors import ConfigurationError

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        app = create_app(settings)
    except ConfigurationError as exc:
        logger.error("Startup failed: %s", exc)
        return 1
    uvicorn.run(app, host=settings.host, port=settings.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())

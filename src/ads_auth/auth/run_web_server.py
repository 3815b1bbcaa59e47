"""
Standalone entry point for running the OAuth web server.
"""
import uvicorn

from ..config.settings import settings
from ..utils.logger import logger
from .web_server import create_app


def main() -> None:
    logger.info(f"Starting ads OAuth web server on {settings.web_server_host}:{settings.web_server_port}")
    logger.info(f"Environment: {settings.environment}")

    for family in ("google", "facebook"):
        missing = settings.missing_credentials(family)
        if missing:
            logger.warning(f"{family} OAuth is not configured, set {', '.join(missing)}")

    uvicorn.run(
        create_app(),
        host=settings.web_server_host,
        port=settings.web_server_port,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()

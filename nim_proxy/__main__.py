import sys

import uvicorn

from .config import ConfigurationError, settings
from .logger import get_logger


logger = get_logger("server")


def main() -> int:
    try:
        settings.require_api_key()
    except ConfigurationError as e:
        logger.critical("FATAL: %s", e)
        return 1
    uvicorn.run(
        "nim_proxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

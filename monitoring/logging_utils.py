import logging
import os
from typing import Optional, Union

NOISY_LOGGERS = ('websockets', 'aiohttp.access', 'uvicorn.access')


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    The level falls back to ``$LOG_LEVEL`` and then INFO.
    """
    if logging.getLogger().handlers:
        return

    level = level or os.getenv('LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

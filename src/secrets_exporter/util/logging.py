"""Process-wide logging configuration.

The exporter runs an informer thread, a pool of reconcile workers and the
scrape server side by side, so the default format carries the thread name.
"""

from __future__ import annotations

import logging
import sys

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request or job run at INFO
NOISY_LOGGERS = ("uvicorn.access", "kubernetes.client.rest", "apscheduler")


def setup_logging(
    level: int | str = logging.INFO,
    fmt: str = DEFAULT_FORMAT,
    datefmt: str = DEFAULT_DATEFMT,
) -> None:
    """Configure the root logger once at startup.

    *level* may be a ``logging`` constant or a name such as ``"DEBUG"``;
    unknown names fall back to ``INFO``.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt=datefmt,
        stream=sys.stdout,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

"""Worker logging setup.

Celery configures the root logger itself unless a receiver is connected to
its ``setup_logging`` signal.  ``configure_logging`` is that receiver, so
worker output uses one format whether it comes from Celery or from the
pipeline modules.
"""

from __future__ import annotations

import logging

from celery.signals import setup_logging

from modelscanner.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(processName)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        force=True,
    )
    # httpx logs every request at INFO; the pipeline already logs each call.
    logging.getLogger("httpx").setLevel(logging.WARNING)


@setup_logging.connect
def _on_celery_setup_logging(loglevel=None, **kwargs) -> None:
    configure_logging(logging.getLevelName(loglevel) if isinstance(loglevel, int) else loglevel)

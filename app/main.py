"""Process entry point: ``notification-engine``.

Creates missing tables, starts the worker pool with a log-only provider
for every channel and the renderer reading ``$TEMPLATE_DIR``, and runs
until SIGINT/SIGTERM.  Real deployments build their own ``Engine`` with
transport-specific providers; this entry point is for local runs.
"""
from __future__ import annotations

import logging
import os
import signal
import threading
from uuid import uuid4

from app.core.constants import Channel
from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.db.base import Base
from app.db.session import get_engine
from app.notification.providers import DeliveryResult, ProviderRegistry, StringTemplateRenderer
from app.runner import WorkerPool
from app.services import Engine

logger = logging.getLogger(__name__)


class LoggingProvider:
    """Accept every message and log only its size."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, address: str, message: str) -> DeliveryResult:
        logger.info("[%s] would send %d characters", self.channel, len(message))
        return DeliveryResult.success(f"{self.channel}-{uuid4().hex}")


def main() -> None:
    setup_logging()
    settings = get_settings()
    Base.metadata.create_all(get_engine())

    providers = ProviderRegistry({channel.value: LoggingProvider(channel.value) for channel in Channel})
    renderer = StringTemplateRenderer(template_dir=os.environ.get("TEMPLATE_DIR", "templates"))
    pool = WorkerPool(Engine(providers, renderer, settings=settings))

    stop = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())

    logger.info("%s %s starting (%s)", settings.app_name, settings.app_version, settings.app_env)
    pool.start()
    try:
        stop.wait()
    finally:
        pool.stop(timeout=settings.provider_timeout_seconds + 5)


if __name__ == "__main__":
    main()

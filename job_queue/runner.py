"""
Runner — hosts one SQSReceiver for the lifetime of a process.

Configures logging, resolves the handler from an import path, starts the
receiver and drains it on SIGINT/SIGTERM.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
import signal
import sys
from typing import Optional

import structlog

from config.settings import ConfigError, LoggingConfig, Settings
from job_queue.message_queue import QueueClient, create_queue_client
from job_queue.receiver import MessageHandler, SQSReceiver

logger = structlog.get_logger()


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Route structlog through stdlib logging with console or JSON output."""
    config = config or LoggingConfig()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level.upper(), logging.INFO),
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer)
    for handler in logging.root.handlers:
        handler.setFormatter(formatter)


def load_handler(path: str) -> MessageHandler:
    """Resolve ``"package.module:function"`` to the handler callable."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"handler must look like 'module:function', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as e:
        raise ConfigError(f"cannot import handler module {module_name!r}: {e}") from e
    try:
        handler = getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"module {module_name!r} has no attribute {attr!r}") from None
    if not callable(handler):
        raise ConfigError(f"handler {path!r} is not callable")
    return handler


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # e.g. Windows, or not on the main thread
            logger.debug("signal_handler_unavailable", signal=sig.name)


async def run_receiver(
    settings: Settings,
    handler: MessageHandler,
    stop_event: Optional[asyncio.Event] = None,
    queue_client: Optional[QueueClient] = None,
) -> None:
    """Run until ``stop_event`` is set (or a termination signal arrives), then drain."""
    config = settings.receiver.validate()
    client = queue_client or create_queue_client(config)

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    receiver = SQSReceiver.from_config(config, handler, queue_client=client)
    try:
        await receiver.start()
        await stop_event.wait()
        logger.info("shutdown_requested", app=settings.app_name)
    finally:
        await receiver.stop()
        await client.close()

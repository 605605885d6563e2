"""Build a ready-to-use RunController from application settings."""

from typing import Optional

import structlog

from paramrun.config import Settings, get_settings
from paramrun.parameterized.controller import RunController
from paramrun.parameterized.executor_client import HttpStepExecutorClient
from paramrun.parameterized.progress import (
    NullProgressNotifier,
    ProgressNotifier,
    WebhookProgressNotifier,
)
from paramrun.services.store import InMemoryRowStore, RowStore
from paramrun.services.supabase_store import SupabaseRowStore
from paramrun.utils.logging import configure_logging

logger = structlog.get_logger()


def build_store(settings: Settings) -> RowStore:
    """Supabase when configured, in-memory otherwise."""
    if settings.supabase_configured:
        return SupabaseRowStore(
            url=settings.supabase_url,
            service_key=settings.supabase_service_key.get_secret_value(),
        )
    logger.warning("Supabase not configured, results are kept in memory only")
    return InMemoryRowStore()


def build_notifier(settings: Settings) -> ProgressNotifier:
    if settings.progress_webhook_url:
        return WebhookProgressNotifier(settings.progress_webhook_url)
    return NullProgressNotifier()


def build_controller(settings: Optional[Settings] = None) -> RunController:
    """Configure logging and wire the executor, store and notifier.

    Args:
        settings: Settings to use; defaults to the cached environment settings

    Returns:
        A RunController ready to run parameterized tests
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    api_key = settings.step_executor_api_key
    executor = HttpStepExecutorClient(
        settings.step_executor_url,
        api_key=api_key.get_secret_value() if api_key else None,
    )

    controller = RunController(
        store=build_store(settings),
        executor=executor,
        notifier=build_notifier(settings),
        in_flight_policy=settings.in_flight_policy,
    )
    logger.info(
        "Run controller initialized",
        step_executor_url=settings.step_executor_url,
        store=type(controller.store).__name__,
        notifier=type(controller.notifier).__name__,
        in_flight_policy=settings.in_flight_policy.value,
    )
    return controller

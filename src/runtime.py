"""Process wiring: builds every engine from Settings and registers the jobs.

Startup fails fast: a bad key, timezone, merge policy, or database URL raises
before the scheduler ever ticks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from src.config import Settings
from src.core.clock import Clock
from src.core.crypto import FieldCodec
from src.core.scheduler import Scheduler
from src.core.timectx import TimeContextResolver
from src.reminders.engine import ReminderDispatchEngine
from src.reminders.slots import SlotSchedule
from src.reminders.sms import SmsTransport, build_transport
from src.storage import database
from src.storage.memory import InMemoryRepository
from src.storage.postgres import PostgresRepository
from src.storage.repository import Repository
from src.wearables.adapters import ProviderRegistry
from src.wearables.config_loader import get_merge_config
from src.wearables.connections import ConnectionService
from src.wearables.limits import ProviderGate
from src.wearables.merge_engine import MergeEngine
from src.wearables.sync.engine import WearableSyncEngine
from src.wearables.token_manager import TokenLifecycleManager

logger = logging.getLogger("cadence.runtime")

TOKEN_REFRESH_JOB = "token_refresh"
WEARABLE_SYNC_JOB = "wearable_sync"
REMINDER_DISPATCH_JOB = "reminder_dispatch"


@dataclass
class Runtime:
    settings: Settings
    clock: Clock
    repository: Repository
    codec: FieldCodec
    resolver: TimeContextResolver
    registry: ProviderRegistry
    gate: ProviderGate
    token_manager: TokenLifecycleManager
    merge_engine: MergeEngine
    sync_engine: WearableSyncEngine
    reminder_engine: ReminderDispatchEngine
    connections: ConnectionService
    scheduler: Scheduler
    transport: SmsTransport
    http_client: httpx.AsyncClient


async def _build_repository(settings: Settings) -> Repository:
    if settings.storage_backend == "postgres":
        repo = PostgresRepository(await database.init_pool(settings))
        await repo.ensure_schema()
        return repo
    logger.warning("Using in-memory storage; data is lost on restart")
    return InMemoryRepository()


async def build_runtime(
    settings: Settings,
    repository: Repository | None = None,
    clock: Clock | None = None,
    transport: SmsTransport | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """Construct and validate every component.  Does not start the scheduler."""
    codec = FieldCodec.from_base64_key(settings.field_encryption_key)
    codec.self_test()
    merge_config = get_merge_config()
    logger.info("Merge policy v%s: %d explicit metric rules", merge_config.version, len(merge_config.rules))

    clock = clock or Clock()
    resolver = TimeContextResolver(settings.default_timezone)
    http_client = http_client or httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)
    registry = ProviderRegistry.from_settings(settings, http_client=http_client, clock=clock)
    gate = ProviderGate(settings.provider_concurrency, settings.provider_default_concurrency)
    repository = repository or await _build_repository(settings)
    transport = transport or build_transport(settings, http_client=http_client)

    token_manager = TokenLifecycleManager(
        repository,
        registry,
        codec,
        gate,
        clock=clock,
        refresh_ahead_seconds=settings.token_refresh_ahead_seconds,
        retry_base_seconds=settings.token_retry_base_seconds,
        retry_max_seconds=settings.token_retry_max_seconds,
    )
    merge_engine = MergeEngine(repository, resolver, clock=clock)
    sync_engine = WearableSyncEngine(
        repository,
        registry,
        token_manager,
        merge_engine,
        resolver,
        gate,
        clock=clock,
        sync_interval_seconds=settings.sync_interval_seconds,
        initial_lookback_days=settings.sync_initial_lookback_days,
    )
    reminder_engine = ReminderDispatchEngine(
        repository,
        transport,
        resolver,
        SlotSchedule(settings.reminder_windows()),
        clock=clock,
        max_attempts=settings.sms_max_attempts,
        retry_base_seconds=settings.sms_retry_base_seconds,
        concurrency=settings.reminder_concurrency,
        claim_lease_seconds=settings.reminder_claim_lease_seconds,
    )

    scheduler = Scheduler(clock=clock, jitter_seconds=settings.scheduler_jitter_seconds)
    scheduler.register(TOKEN_REFRESH_JOB, settings.token_refresh_interval_seconds, token_manager.run_tick)
    scheduler.register(WEARABLE_SYNC_JOB, settings.sync_tick_seconds, sync_engine.run_tick)
    scheduler.register(REMINDER_DISPATCH_JOB, settings.reminder_tick_seconds, reminder_engine.run_tick)

    logger.info(
        "Runtime ready: providers=%s storage=%s sms=%s",
        [p.value for p in registry.providers] or "none",
        settings.storage_backend,
        settings.sms_backend,
    )
    return Runtime(
        settings=settings,
        clock=clock,
        repository=repository,
        codec=codec,
        resolver=resolver,
        registry=registry,
        gate=gate,
        token_manager=token_manager,
        merge_engine=merge_engine,
        sync_engine=sync_engine,
        reminder_engine=reminder_engine,
        connections=ConnectionService(repository, registry, codec, clock=clock),
        scheduler=scheduler,
        transport=transport,
        http_client=http_client,
    )


async def shutdown_runtime(runtime: Runtime) -> None:
    """Stop the scheduler, then release clients and the database pool."""
    clean = await runtime.scheduler.stop(timeout=runtime.settings.scheduler_shutdown_timeout_seconds)
    if not clean:
        logger.warning("Some jobs were cancelled during shutdown")
    await runtime.transport.aclose()
    await runtime.http_client.aclose()
    if isinstance(runtime.repository, PostgresRepository):
        await database.close_pool()
    else:
        await runtime.repository.close()

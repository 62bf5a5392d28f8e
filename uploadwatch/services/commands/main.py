"""uploadwatch process: command HTTP surface plus the background poll loop.

The chat framework forwards subscribe/unsubscribe invocations here. The poll
loop runs as its own task in the app lifespan and talks to the handlers only
through the database.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel, Field

from uploadwatch.common.config import settings
from uploadwatch.common.db import Base, SessionLocal, engine
from uploadwatch.common.logging import configure_logging
from uploadwatch.common.metrics import metrics_response
from uploadwatch.common.startup import log_startup_config
from uploadwatch.common.tracing import instrument_app, setup_tracing
from uploadwatch.services.catchup.resolver import CatchUpResolver
from uploadwatch.services.clients.discord import DiscordGateway
from uploadwatch.services.clients.youtube import YouTubeClient
from uploadwatch.services.commands.handlers import CommandHandlers
from uploadwatch.services.dispatcher.service import NotificationDispatcher
from uploadwatch.services.quota.allocator import QuotaAllocator
from uploadwatch.services.scheduler.service import PollScheduler
from uploadwatch.services.store.repository import SubscriptionStore
from uploadwatch.services.subscriptions.service import SubscriptionManager

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "database_url",
        "youtube_api_key",
        "discord_bot_token",
        "daily_quota_budget",
        "quota_reset_hour",
        "quota_reset_timezone",
        "poll_interval_seconds",
        "max_pages_per_cycle",
    ],
)

# Existing tables are left alone; alembic owns schema changes.
Base.metadata.create_all(engine)
store = SubscriptionStore(SessionLocal)
youtube = YouTubeClient(
    settings.youtube_api_key,
    api_url=settings.youtube_api_url,
    region_code=settings.youtube_region_code,
    language=settings.youtube_language,
    shorts_max_seconds=settings.shorts_max_seconds,
    timeout=settings.http_timeout_seconds,
)
discord = DiscordGateway(
    settings.discord_bot_token,
    api_url=settings.discord_api_url,
    timeout=settings.http_timeout_seconds,
)
allocator = QuotaAllocator.from_state(
    store,
    settings.daily_quota_budget,
    reset_hour=settings.quota_reset_hour,
    reset_timezone=settings.quota_reset_timezone,
    service_name=settings.service_name,
)
dispatcher = NotificationDispatcher(
    store,
    discord,
    max_attempts=settings.dispatch_max_attempts,
    base_backoff_seconds=settings.dispatch_backoff_seconds,
    service_name=settings.service_name,
)
scheduler = PollScheduler(
    store,
    CatchUpResolver(youtube, allocator, settings.max_pages_per_cycle, service_name=settings.service_name),
    dispatcher,
    poll_interval=settings.poll_interval_seconds,
    catchup_delay=settings.catchup_delay_seconds,
    service_name=settings.service_name,
)
handlers = CommandHandlers(SubscriptionManager(store, youtube, allocator), store, settings.poll_interval_seconds)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the poll loop with the app; on shutdown let its current call finish."""

    stop_event = asyncio.Event()
    poll_task = asyncio.create_task(scheduler.run_forever(stop_event))
    yield
    stop_event.set()
    await poll_task
    await youtube.aclose()
    await discord.aclose()


app = FastAPI(title="uploadwatch", lifespan=lifespan)
instrument_app(app)


class CommandRequest(BaseModel):
    """Command invocation forwarded by the chat framework."""

    destination: str = Field(min_length=1)
    args: list[str] = []


class CommandReply(BaseModel):
    reply: str


@app.post("/commands/{name}", response_model=CommandReply)
async def run_command(name: str, req: CommandRequest):
    """Execute one chat command and return the reply text."""

    return CommandReply(reply=await handlers.dispatch(name, req.destination, req.args))


@app.get("/quota")
def quota():
    """Current quota window."""

    return allocator.snapshot().model_dump()


@app.get("/sources")
def sources():
    """Polled sources with their checkpoint and catch-up cursor."""

    return [source.model_dump() for source in store.list_active_sources()]


@app.post("/internal/dispatch-failures/replay")
async def replay_dispatch_failures(limit: int = 100):
    """Resend item/subscription pairs that exhausted their retries."""

    return await dispatcher.replay_failures(limit)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}

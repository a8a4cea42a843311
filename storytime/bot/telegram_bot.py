"""
StoryTime — Telegram Bot.

Hosts the pipeline's timers and a small command surface:

    sync_all    every SYNC_INTERVAL_MINUTES
    tick        every TICK_INTERVAL_SECONDS
    purge       daily, removes expired storylines

Reminders go out through the configured chat sink (Telegram by default,
Slack optionally). Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import time as dt_time, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from storytime.config import settings
from storytime.core.sync_engine import SkippedInactive
from storytime.data.db import EventFilter, utcnow
from storytime.data.models import SyncOutcome

if TYPE_CHECKING:
    from storytime.core.service import StoryTimeService
    from storytime.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _service(context: ContextTypes.DEFAULT_TYPE) -> StoryTimeService:
    return context.bot_data["service"]


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *StoryTime*!\n\n"
        "I turn your calendar into a story:\n"
        "• Every event gets a short themed storyline\n"
        f"• {settings.NOTIFICATION_LEAD_MINUTES} minutes before it starts, I send it to you\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/sync — Sync your calendars now\n"
        "/status — Last sync result per calendar account\n"
        "/events — Upcoming events and their storylines\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_sync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /sync — on-demand sync of the caller's integrations."""
    service = _service(context)
    integrations = service.integrations.list_integrations(user_id=update.effective_user.id)
    if not integrations:
        await update.message.reply_text("No calendar account is connected yet.")
        return

    lines = []
    for integration in integrations:
        try:
            status = await service.trigger_sync(integration.id)
        except SkippedInactive:
            lines.append(f"#{integration.id} {integration.provider}: skipped ({integration.status.value})")
            continue
        if status.outcome == SyncOutcome.SUCCESS:
            lines.append(
                f"#{integration.id} {integration.provider}: ✅ {status.events_processed} event(s)"
            )
        else:
            lines.append(f"#{integration.id} {integration.provider}: ❌ {status.error}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status — last SyncStatus per integration."""
    service = _service(context)
    integrations = service.integrations.list_integrations(user_id=update.effective_user.id)
    if not integrations:
        await update.message.reply_text("No calendar account is connected yet.")
        return

    lines = []
    for integration in integrations:
        status = service.get_sync_status(integration.id)
        header = f"#{integration.id} {integration.provider} [{integration.status.value}]"
        if status is None:
            lines.append(f"{header}: never synced")
            continue
        when = status.timestamp.strftime("%Y-%m-%d %H:%M UTC")
        detail = f"{status.events_processed} event(s)" if status.error is None else status.error
        lines.append(f"{header}: {status.outcome.value} at {when} ({detail})")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_events(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /events — upcoming events within the sync window."""
    service = _service(context)
    now = utcnow()
    lines = []
    for integration in service.integrations.list_integrations(user_id=update.effective_user.id):
        views = service.get_events(
            EventFilter(
                integration_id=integration.id,
                start_from=now,
                start_to=now + timedelta(days=settings.SYNC_WINDOW_DAYS),
            )
        )
        for view in views:
            when = view.event.start_time.strftime("%a %H:%M UTC")
            line = f"📅 {when} {view.event.title}"
            if view.storyline is not None:
                line += f"\n{view.storyline.emoji} {view.storyline.story_text}"
            lines.append(line)

    if not lines:
        await update.message.reply_text("No upcoming events.")
        return
    await update.message.reply_text("\n\n".join(lines))


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def _sync_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await _service(context).sync_all()


async def _tick_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await _service(context).tick()


async def _purge_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    _service(context).purge_expired_storylines()


def _setup_jobs(app: Application) -> None:
    """Register repeating sync and tick jobs plus the daily storyline purge."""
    app.job_queue.run_repeating(
        _sync_job,
        interval=timedelta(minutes=settings.SYNC_INTERVAL_MINUTES),
        first=5,
        name="sync_all",
    )
    app.job_queue.run_repeating(
        _tick_job,
        interval=settings.TICK_INTERVAL_SECONDS,
        first=settings.TICK_INTERVAL_SECONDS,
        name="notification_tick",
    )
    app.job_queue.run_daily(
        _purge_job,
        time=dt_time(hour=3, minute=0, tzinfo=ZoneInfo(settings.TIMEZONE)),
        name="storyline_purge",
    )
    logger.info(
        "Jobs scheduled: sync every %d min, tick every %ds, purge daily 03:00 %s",
        settings.SYNC_INTERVAL_MINUTES, settings.TICK_INTERVAL_SECONDS, settings.TIMEZONE,
    )


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def create_sink(app: Application) -> NotificationPort:
    """Pick the chat sink named by CHAT_SINK."""
    sink = settings.CHAT_SINK.lower()
    if sink == "telegram":
        from storytime.adapters.telegram_notifier import TelegramNotifier
        return TelegramNotifier(app.bot)
    if sink == "slack":
        from storytime.adapters.slack_notifier import SlackNotifier
        return SlackNotifier(settings.SLACK_BOT_TOKEN, channel=settings.SLACK_CHANNEL)
    raise ValueError(f"Unknown chat sink: {settings.CHAT_SINK!r}")


def build_app(service: StoryTimeService | None = None) -> Application:
    """Build and configure the Telegram Application with handlers and jobs.

    Args:
        service: Pipeline service. Defaults to one wired from settings with
                 the sink chosen by CHAT_SINK.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if service is None:
        from storytime.core.service import StoryTimeService
        service = StoryTimeService.build(sink=create_sink(app))

    service.start()
    app.bot_data["service"] = service

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("sync", cmd_sync))
    app.add_handler(CommandHandler("status", cmd_status))
    app.add_handler(CommandHandler("events", cmd_events))

    _setup_jobs(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logger.info("Starting StoryTime bot...")
    app = build_app()
    app.run_polling()

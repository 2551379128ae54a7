"""
Health Reminder Bot — Telegram Bot.

Telegram is the control surface: users log readings, look at their
statistics, drive workout sessions and answer reminder buttons here.
Handlers are thin pass-throughs into the core services.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta, timezone, tzinfo
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Bot, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from healthbot.config import settings
from healthbot.core.clock import Clock, local_date, system_clock
from healthbot.core.scheduler import Scheduler
from healthbot.core.stats import PeriodStats, bp_stats, weight_stats
from healthbot.core.workout import (
    ConfigurationError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from healthbot.data.models import Domain

if TYPE_CHECKING:
    from healthbot.core.medication import MedicationService
    from healthbot.core.reminders import ReminderService
    from healthbot.core.workout import WorkoutService
    from healthbot.data.db import ReadingDB

logger = logging.getLogger(__name__)

STATS_LOOKBACK = timedelta(days=61)

_DOMAIN_ALIASES = {
    "bp": Domain.BLOOD_PRESSURE,
    "weight": Domain.WEIGHT,
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from unauthorized users.

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


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything the handlers and the timer job need, built once per app."""

    reading_db: ReadingDB
    reminders: ReminderService
    medications: MedicationService
    workouts: WorkoutService
    scheduler: Scheduler
    clock: Clock = system_clock
    tz: tzinfo = timezone.utc


def build_services(bot: Bot, db_path: str | None = None, clock: Clock = system_clock) -> Services:
    """Create stores, providers, dispatcher and core services."""
    from healthbot.adapters.telegram_notifier import TelegramProvider
    from healthbot.core.dispatcher import NotificationDispatcher
    from healthbot.core.medication import MedicationService
    from healthbot.core.reminders import ReminderService
    from healthbot.core.workout import WorkoutService
    from healthbot.data.db import NotificationSettingsDB, ReadingDB, ReminderStateDB
    from healthbot.data.medication_db import MedicationDB
    from healthbot.data.workout_db import WorkoutDB

    tz = ZoneInfo(settings.TIMEZONE)
    providers = [TelegramProvider(bot)]
    if settings.web_push_enabled:
        from healthbot.adapters.webpush_notifier import WebPushProvider
        from healthbot.data.db import PushSubscriptionDB

        providers.append(
            WebPushProvider(
                PushSubscriptionDB(db_path),
                settings.VAPID_PRIVATE_KEY,
                settings.VAPID_SUBJECT,
            )
        )
    dispatcher = NotificationDispatcher(
        NotificationSettingsDB(db_path),
        providers,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )

    state_db = ReminderStateDB(db_path)
    reading_db = ReadingDB(db_path)
    reminders = ReminderService(state_db, reading_db, dispatcher, clock=clock, tz=tz)
    medications = MedicationService(
        MedicationDB(db_path),
        state_db,
        dispatcher,
        clock=clock,
        tz=tz,
        low_stock_days=settings.LOW_STOCK_DAYS,
        low_stock_hour=settings.LOW_STOCK_HOUR,
    )
    workouts = WorkoutService(WorkoutDB(db_path), dispatcher, clock=clock, tz=tz)
    scheduler = Scheduler(
        settings.ALLOWED_USER_IDS, reminders, medications, workouts, clock=clock
    )
    return Services(
        reading_db=reading_db,
        reminders=reminders,
        medications=medications,
        workouts=workouts,
        scheduler=scheduler,
        clock=clock,
        tz=tz,
    )


def _services(context: ContextTypes.DEFAULT_TYPE) -> Services:
    return context.bot_data["services"]


# ---------------------------------------------------------------------------
# Basic commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to your health tracker!\n\n"
        "I remind you to measure blood pressure and weight, take your "
        "medications and show up for your workouts.\n\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/bp <systolic> <diastolic> [pulse] — Log a blood pressure reading\n"
        "/weight <kg> [body fat %] — Log your weight\n"
        "/stats — Day-weighted averages for 14/30/60 days\n"
        "/next — Show your next workout\n"
        "/workout — Start an ad-hoc workout\n"
        "/done — Finish the workout in progress\n"
        "/reminders [bp|weight] [on|off] — Show or toggle reminders\n"
        "/help — Show this message"
    )


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_bp(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /bp <sys> <dia> [pulse] — record a blood pressure reading."""
    services = _services(context)
    args = context.args or []
    try:
        values = [int(a) for a in args]
    except ValueError:
        values = []
    if len(values) not in (2, 3) or not all(20 <= v <= 300 for v in values):
        await update.message.reply_text("Usage: /bp <systolic> <diastolic> [pulse]\nExample: /bp 128 82 70")
        return

    user_id = update.effective_user.id
    systolic, diastolic = values[0], values[1]
    pulse = values[2] if len(values) == 3 else None
    reading = services.reading_db.add_bp_reading(
        user_id, services.clock(), systolic, diastolic, pulse=pulse
    )
    await services.reminders.acknowledge(user_id, Domain.BLOOD_PRESSURE)
    await update.message.reply_text(
        f"✅ Recorded {reading.systolic}/{reading.diastolic}"
        + (f" (pulse {reading.pulse})" if reading.pulse else "")
        + f" — {reading.category}"
    )


@authorized_only
async def cmd_weight(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /weight <kg> [body fat %] — record a weigh-in."""
    services = _services(context)
    args = context.args or []
    try:
        values = [float(a.replace(",", ".")) for a in args]
    except ValueError:
        values = []
    if len(values) not in (1, 2) or not 20 <= values[0] <= 400:
        await update.message.reply_text("Usage: /weight <kg> [body fat %]\nExample: /weight 81.4")
        return

    user_id = update.effective_user.id
    body_fat = values[1] if len(values) == 2 else None
    log = services.reading_db.add_weight_log(user_id, services.clock(), values[0], body_fat=body_fat)
    await services.reminders.acknowledge(user_id, Domain.WEIGHT)
    await update.message.reply_text(
        f"✅ Recorded {log.weight:.1f} kg (trend {log.weight_trend:.1f} kg)"
    )


def _format_period(days: int, stats: PeriodStats | None, fmt: Callable[[dict], str]) -> str:
    if stats is None:
        return f"{days} days: no data"
    return f"{days} days: {fmt(stats.averages)} ({stats.days} days, {stats.readings} readings)"


@authorized_only
async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats — day-weighted averages plus workout summary."""
    services = _services(context)
    user_id = update.effective_user.id
    now = services.clock()
    since = now - STATS_LOOKBACK

    bp = bp_stats(services.reading_db.list_bp_readings(user_id, since=since), now)
    weight = weight_stats(services.reading_db.list_weight_logs(user_id, since=since), now)
    workouts = services.workouts.stats(user_id)

    lines = ["📊 Blood pressure"]
    lines += [
        _format_period(d, s, lambda a: f"{a['systolic']}/{a['diastolic']}") for d, s in bp.items()
    ]
    lines += ["", "⚖️ Weight"]
    lines += [_format_period(d, s, lambda a: f"{a['weight']:.1f} kg") for d, s in weight.items()]
    lines += [
        "",
        "🏋️ Workouts",
        f"Completed: {workouts.completed} | Skipped: {workouts.skipped} | Streak: {workouts.streak}",
    ]
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# Reminder settings
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_reminders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reminders [bp|weight] [on|off]."""
    services = _services(context)
    user_id = update.effective_user.id
    args = [a.lower() for a in (context.args or [])]

    if len(args) == 2 and args[0] in _DOMAIN_ALIASES and args[1] in ("on", "off"):
        domain = _DOMAIN_ALIASES[args[0]]
        services.reminders.set_enabled(user_id, domain, args[1] == "on")
        await update.message.reply_text(f"{args[0].upper()} reminders turned {args[1]}.")
        return
    if args:
        await update.message.reply_text("Usage: /reminders [bp|weight] [on|off]")
        return

    lines = ["Reminders:"]
    for alias, domain in _DOMAIN_ALIASES.items():
        state = services.reminders.state(user_id, domain)
        status = "on" if state.enabled else "off"
        lines.append(f"• {alias}: {status}, around {state.preferred_reminder_hour:02d}:00")
    await update.message.reply_text("\n".join(lines))


async def _handle_reminder_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle bp_/weight_ confirm, snooze and don't-bug-me buttons."""
    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    services = _services(context)
    prefix, action = query.data.split("_", 1)
    domain = _DOMAIN_ALIASES[prefix]
    label = "BP" if domain is Domain.BLOOD_PRESSURE else "Weight"
    chat_id = query.message.chat_id

    if action == "confirm":
        await services.reminders.acknowledge(user.id, domain)
        usage = "/bp <systolic> <diastolic> [pulse]" if domain is Domain.BLOOD_PRESSURE else "/weight <kg>"
        await context.bot.send_message(chat_id=chat_id, text=f"👍 Great! Log it with {usage}")
    elif action == "snooze":
        await services.reminders.snooze(user.id, domain)
        await context.bot.send_message(chat_id=chat_id, text=f"⏰ {label} reminder snoozed for 2 hours.")
    elif action == "dontbug":
        await services.reminders.suppress(user.id, domain)
        await context.bot.send_message(chat_id=chat_id, text=f"🔇 {label} reminders disabled for 24 hours.")


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------


async def _handle_medication_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle med_confirm:<ids> and med_snooze:<ids> buttons."""
    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    services = _services(context)
    action, _, raw_ids = query.data.partition(":")
    intake_ids = [int(i) for i in raw_ids.split(",") if i]
    chat_id = query.message.chat_id

    if action == "med_confirm":
        confirmed = await services.medications.confirm(user.id, intake_ids)
        text = "✅ Marked as taken." if confirmed else "Already recorded."
    else:
        await services.medications.snooze(user.id, intake_ids)
        text = "⏰ I'll remind you again in an hour."
    await context.bot.send_message(chat_id=chat_id, text=text)


# ---------------------------------------------------------------------------
# Workouts
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_next(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /next — show the next scheduled or running workout."""
    services = _services(context)
    session = services.workouts.next_workout(update.effective_user.id)
    if session is None:
        await update.message.reply_text("No upcoming workouts.")
        return

    when = "today" if session.scheduled_date == local_date(services.clock(), services.tz) \
        else session.scheduled_date.isoformat()
    await update.message.reply_text(
        f"🏋️ Next: {services.workouts.session_title(session)}\n"
        f"{when} at {session.scheduled_time} ({session.status.value.replace('_', ' ')})"
    )


@authorized_only
async def cmd_workout(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /workout — start an ad-hoc session right now."""
    services = _services(context)
    user_id = update.effective_user.id
    active = services.workouts.active_session(user_id)
    if active is not None:
        await update.message.reply_text(
            f"You already have a workout in progress (#{active.id}). Send /done to finish it."
        )
        return
    session = services.workouts.start_adhoc(user_id)
    await update.message.reply_text(
        f"🏋️ Ad-hoc workout #{session.id} started. Send /done when you're finished."
    )


async def _complete(services: Services, user_id: int, session_id: int) -> str:
    try:
        session = await services.workouts.complete(user_id, session_id)
    except ConfigurationError as exc:
        return f"✅ Workout #{session_id} completed, but the rotation could not advance: {exc}"
    return f"✅ {services.workouts.session_title(session)} completed. Well done!"


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done — complete the workout in progress."""
    services = _services(context)
    user_id = update.effective_user.id
    active = services.workouts.active_session(user_id)
    if active is None:
        await update.message.reply_text("No workout in progress.")
        return
    try:
        text = await _complete(services, user_id, active.id)
    except (InvalidTransitionError, SessionNotFoundError) as exc:
        logger.error("/done error: %s", exc)
        text = "Couldn't complete the workout. Please try again."
    await update.message.reply_text(text)


async def _handle_workout_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle workout_<action>_<session_id> buttons."""
    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    services = _services(context)
    _, action, raw_id = query.data.split("_")
    session_id = int(raw_id)
    chat_id = query.message.chat_id

    try:
        if action == "start":
            session = await services.workouts.start(user.id, session_id)
            text = f"💪 {services.workouts.session_title(session)} started. Send /done when finished."
        elif action in ("snooze1", "snooze2"):
            hours = 1 if action == "snooze1" else 2
            await services.workouts.snooze(user.id, session_id, timedelta(hours=hours))
            text = f"⏰ Workout snoozed for {hours}h."
        elif action == "skip":
            await services.workouts.skip(user.id, session_id)
            text = "⏭ Workout skipped."
        else:
            text = await _complete(services, user.id, session_id)
    except InvalidTransitionError as exc:
        text = f"Can't do that: {exc}."
    except SessionNotFoundError:
        text = "Workout session not found."
    await context.bot.send_message(chat_id=chat_id, text=text)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(services: Services | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        services: Pre-built core services. Defaults to services wired from
                  settings around this app's bot instance.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if services is None:
        services = build_services(app.bot)
    app.bot_data["services"] = services

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("bp", cmd_bp))
    app.add_handler(CommandHandler("weight", cmd_weight))
    app.add_handler(CommandHandler("stats", cmd_stats))
    app.add_handler(CommandHandler("reminders", cmd_reminders))
    app.add_handler(CommandHandler("next", cmd_next))
    app.add_handler(CommandHandler("workout", cmd_workout))
    app.add_handler(CommandHandler("done", cmd_done))

    # Inline buttons
    app.add_handler(CallbackQueryHandler(
        _handle_reminder_callback, pattern=r"^(bp|weight)_(confirm|snooze|dontbug)$"
    ))
    app.add_handler(CallbackQueryHandler(
        _handle_medication_callback, pattern=r"^med_(confirm|snooze):[\d,]+$"
    ))
    app.add_handler(CallbackQueryHandler(
        _handle_workout_callback, pattern=r"^workout_(start|snooze1|snooze2|skip|done)_\d+$"
    ))

    _setup_scheduler(app, services.scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_scheduler(app: Application, scheduler: Scheduler) -> None:
    """Register the repeating scheduler tick."""

    async def _tick_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.tick()

    app.job_queue.run_repeating(
        _tick_callback,
        interval=settings.SCHEDULER_INTERVAL_SECONDS,
        first=10,
        name="health_scheduler",
    )

    logger.info("Scheduler tick every %ds", settings.SCHEDULER_INTERVAL_SECONDS)


def main() -> None:
    """Entry point: build the app and start polling."""
    logger.info("Starting health reminder bot...")
    app = build_app()
    app.run_polling()

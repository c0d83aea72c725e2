import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Optional

from aiogram import Bot, Dispatcher, Router, F
from aiogram.exceptions import TelegramAPIError
from aiogram.types import Message

from core import (
    CHECK_INTERVAL, DB_PATH, LIST_COMMAND,
    HELP_TEXT, INVALID_TIME_TEXT, NO_EVENTS_TEXT, PAST_TIME_TEXT, STORE_ERROR_TEXT,
    InvalidTimestamp, NotificationSendFailure, StoreUnavailable,
    format_listing, format_notification, format_saved,
    now_tz, parse_event, require_bot_token, resolve_event_time, truncate_minute,
)
from storage import EventStore

SendFunc = Callable[[int, str], Awaitable[bool]]

router = Router()


async def handle_text(
    store: EventStore,
    sender_id: int,
    username: Optional[str],
    text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Process one incoming message and return the reply text (None: stay silent)."""
    if text is None:
        return None
    now = now or now_tz()

    try:
        if text == LIST_COMMAND:
            events = await store.list_events(sender_id)
            if not events:
                return NO_EVENTS_TEXT
            return format_listing(events)

        parsed = parse_event(text)
        if parsed is None:
            return HELP_TEXT

        try:
            event_at = resolve_event_time(parsed.time, parsed.date, now)
        except InvalidTimestamp:
            logging.info("bad date/time from %s: %r", sender_id, text)
            return INVALID_TIME_TEXT
        if event_at < truncate_minute(now):
            return PAST_TIME_TEXT

        user_id = await store.ensure_user(sender_id, username)
        await store.create_event(user_id, parsed.text, event_at)
        return format_saved(parsed)
    except StoreUnavailable:
        logging.exception("store failure while handling message from %s", sender_id)
        return STORE_ERROR_TEXT


@router.message(F.text)
async def on_text(message: Message, store: EventStore):
    user = message.from_user
    if not user:
        return
    reply = await handle_text(store, user.id, user.username, message.text)
    if reply:
        await message.answer(reply)


async def send_notification(bot: Bot, chat_id: int, text: str) -> bool:
    try:
        await bot.send_message(chat_id, text)
    except TelegramAPIError as e:
        logging.warning("%s: chat_id=%s: %s", NotificationSendFailure.__name__, chat_id, e)
        return False
    return True


async def scan_due_events(store: EventStore, send: SendFunc, now: Optional[datetime] = None) -> int:
    """One pass of the reminders worker; returns how many due events were handled.

    The store lock is taken separately for the lookup and for each
    mark_delivered, never around send. An event is marked delivered even if
    sending failed, so a dead chat cannot pile up retries.
    """
    due = await store.find_due(now or now_tz())
    for event in due:
        try:
            ok = await send(event.telegram_id, format_notification(event))
        except Exception:
            logging.exception("%s: chat_id=%s", NotificationSendFailure.__name__, event.telegram_id)
            ok = False
        if ok:
            logging.info("reminder sent: chat_id=%s time=%s", event.telegram_id, event.event_time)
        await store.mark_delivered(event.telegram_id, event.event_time)
    return len(due)


async def reminders_worker(
    store: EventStore,
    send: SendFunc,
    interval: float = CHECK_INTERVAL,
    stop: Optional[asyncio.Event] = None,
):
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await scan_due_events(store, send)
        except StoreUnavailable as e:
            logging.warning("reminders_worker: store unavailable: %s", e)
        except Exception:
            logging.exception("reminders_worker error")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def main():
    logging.basicConfig(level=logging.INFO)

    store = EventStore(DB_PATH)
    await store.init()

    bot = Bot(token=require_bot_token())
    dp = Dispatcher(store=store)
    dp.include_router(router)

    stop = asyncio.Event()
    worker = asyncio.create_task(reminders_worker(store, partial(send_notification, bot), stop=stop))

    logging.info("Starting reminder bot...")
    try:
        await dp.start_polling(bot)
    finally:
        stop.set()
        await worker
        await bot.session.close()

if __name__ == "__main__":
    asyncio.run(main())

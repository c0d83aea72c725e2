import os
import re
from datetime import datetime
from zoneinfo import ZoneInfo
from typing import NamedTuple, Optional, Sequence

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"))

TZ = ZoneInfo(os.getenv("BOT_TZ", "Europe/Moscow"))
DB_PATH = os.getenv("DB_PATH", os.path.join(BASE_DIR, "reventor.sqlite3"))
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
CHECK_INTERVAL = float(os.getenv("CHECK_INTERVAL", "10"))

LIST_COMMAND = "/events"

DISPLAY_FORMAT = "%d.%m.%Y %H:%M"
SORT_FORMAT = "%Y-%m-%dT%H:%M"

MARKER_RE = re.compile(r"@(?:(\d{2}\.\d{2}(?:\.\d{4})?)\s+)?(\d{2}:\d{2})")

HELP_TEXT = (
    "Привет! Чтобы создать событие, используйте форматы:\n"
    "@ЧЧ:ММ - событие на сегодня\n"
    "@ДД.ММ ЧЧ:ММ - событие на конкретную дату\n"
    "@ДД.ММ.ГГГГ ЧЧ:ММ - событие на конкретную дату с годом"
)
NO_EVENTS_TEXT = "У вас пока нет запланированных событий"
INVALID_TIME_TEXT = "Не удалось разобрать дату или время. Проверьте, что такая дата существует."
PAST_TIME_TEXT = "Похоже, это время уже в прошлом."
STORE_ERROR_TEXT = "Что-то пошло не так, попробуйте ещё раз позже."


class ReventorError(Exception):
    pass


class InvalidTimestamp(ReventorError):
    """Marker matched, but the date/time does not exist on the calendar."""


class StoreUnavailable(ReventorError):
    """Database could not be read or written; safe to retry later."""


class NotificationSendFailure(ReventorError):
    pass


class ParsedEvent(NamedTuple):
    text: str
    time: str
    date: Optional[str]


class UserEvent(NamedTuple):
    text: str
    event_time: str


class DueEvent(NamedTuple):
    telegram_id: int
    text: str
    event_time: str


def require_bot_token() -> str:
    if not BOT_TOKEN:
        raise RuntimeError("Set BOT_TOKEN env var")
    return BOT_TOKEN


def now_tz() -> datetime:
    return datetime.now(tz=TZ)


def truncate_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def format_dt(dt: datetime) -> str:
    return dt.strftime(DISPLAY_FORMAT)


def sort_key(dt: datetime) -> str:
    return dt.strftime(SORT_FORMAT)


def parse_event(text: str) -> Optional[ParsedEvent]:
    """Find the first ``@[DD.MM[.YYYY] ]HH:MM`` marker in ``text``.

    Only the shape is checked here; "31.02" or "25:99" still match and are
    rejected later by :func:`resolve_event_time`.
    """
    m = MARKER_RE.search(text)
    if not m:
        return None
    return ParsedEvent(text=text, time=m.group(2), date=m.group(1))


def resolve_event_time(time: str, date: Optional[str] = None, now: Optional[datetime] = None) -> datetime:
    """Turn a marker's time and optional date into a local datetime.

    Missing date means today, missing year means the current year.
    Raises InvalidTimestamp when the result is not a real calendar moment.
    """
    now = now or now_tz()
    if date is None:
        date = now.strftime("%d.%m.%Y")
    elif date.count(".") == 1:
        date = f"{date}.{now.year}"

    raw = f"{date} {time}:00"
    try:
        dt = datetime.strptime(raw, "%d.%m.%Y %H:%M:%S")
    except ValueError as e:
        raise InvalidTimestamp(f"cannot parse {raw!r}") from e
    return truncate_minute(dt).replace(tzinfo=now.tzinfo or TZ)


def format_saved(event: ParsedEvent) -> str:
    when = f"на {event.date}" if event.date else "на сегодня"
    return f"Сохранено событие {when} в {event.time}\nТекст события: {event.text}"


def format_listing(events: Sequence[UserEvent]) -> str:
    return "\n".join(f"{i}. {e.event_time} - {e.text}" for i, e in enumerate(events, start=1))


def format_notification(event: DueEvent) -> str:
    return f"🔔 Напоминание!\n{event.text}\nВремя: {event.event_time}"

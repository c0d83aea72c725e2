import json
import hmac
import hashlib
import urllib.parse
from typing import List

from fastapi import FastAPI, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import core
from core import DB_PATH, StoreUnavailable
from storage import EventStore

app = FastAPI()

# Мини-приложение может жить на другом домене.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)

store = EventStore(DB_PATH)


@app.on_event("startup")
async def startup():
    await store.init()


def telegram_webapp_verify_initdata(init_data: str) -> dict:
    """
    Проверка подписи initData по Telegram WebApp.
    Возвращает dict с user (initDataUnsafe.user), если подпись валидна.
    """
    if not init_data:
        raise HTTPException(401, "Missing initData")

    try:
        parsed = urllib.parse.parse_qs(init_data, strict_parsing=True)
    except ValueError:
        raise HTTPException(401, "Bad initData format")

    if "hash" not in parsed:
        raise HTTPException(401, "No hash in initData")
    received_hash = parsed["hash"][0]

    data_check_string = "\n".join(
        f"{k}={parsed[k][0]}" for k in sorted(parsed) if k != "hash"
    )

    secret_key = hmac.new(b"WebAppData", core.require_bot_token().encode("utf-8"), hashlib.sha256).digest()
    computed_hash = hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()

    if not hmac.compare_digest(computed_hash, received_hash):
        raise HTTPException(401, "Bad initData hash")

    user_json = parsed.get("user", [None])[0]
    if not user_json:
        raise HTTPException(401, "No user in initData")

    try:
        user = json.loads(user_json)
    except ValueError:
        raise HTTPException(401, "Bad user JSON in initData")

    if not isinstance(user, dict) or "id" not in user:
        raise HTTPException(401, "No user.id in initData")

    return {"user": user}


class EventView(BaseModel):
    position: int
    event_time: str
    text: str


@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/api/events", response_model=List[EventView])
async def api_list_events(
    x_telegram_initdata: str = Header(default="", alias="X-Telegram-InitData"),
):
    auth = telegram_webapp_verify_initdata(x_telegram_initdata)
    telegram_id = int(auth["user"]["id"])

    try:
        events = await store.list_events(telegram_id)
    except StoreUnavailable:
        raise HTTPException(503, "storage unavailable")

    return [
        EventView(position=i, event_time=e.event_time, text=e.text)
        for i, e in enumerate(events, start=1)
    ]

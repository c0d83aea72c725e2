import asyncio
import hashlib
import hmac
import json
import urllib.parse
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import core
import server
from core import TZ
from storage import EventStore

TOKEN = "123456:TEST-TOKEN"


def sign_initdata(user: dict, token: str = TOKEN) -> str:
    fields = {"auth_date": "1714550400", "query_id": "AAF", "user": json.dumps(user)}
    data_check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret_key = hmac.new(b"WebAppData", token.encode("utf-8"), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    return urllib.parse.urlencode(fields)


@pytest.fixture()
def client(monkeypatch, db_path):
    monkeypatch.setattr(core, "BOT_TOKEN", TOKEN)
    store = EventStore(db_path)
    monkeypatch.setattr(server, "store", store)

    async def seed():
        probe = EventStore(db_path)
        await probe.init()
        uid = await probe.ensure_user(555, "alice")
        await probe.create_event(uid, "@10:00 later", datetime(2024, 5, 1, 10, 0, tzinfo=TZ))
        await probe.create_event(uid, "@09:30 dentist", datetime(2024, 5, 1, 9, 30, tzinfo=TZ))
        await probe.create_event(uid, "@08:00 done", datetime(2024, 5, 1, 8, 0, tzinfo=TZ))
        await probe.mark_delivered(555, "01.05.2024 08:00")

    asyncio.run(seed())
    with TestClient(server.app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_list_events(client):
    resp = client.get("/api/events", headers={"X-Telegram-InitData": sign_initdata({"id": 555})})
    assert resp.status_code == 200
    assert resp.json() == [
        {"position": 1, "event_time": "01.05.2024 09:30", "text": "@09:30 dentist"},
        {"position": 2, "event_time": "01.05.2024 10:00", "text": "@10:00 later"},
    ]


def test_list_events_for_unknown_user(client):
    resp = client.get("/api/events", headers={"X-Telegram-InitData": sign_initdata({"id": 777})})
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.parametrize("initdata", [
    "",
    "garbage",
    sign_initdata({"id": 555}, token="other:token"),
    sign_initdata({"name": "no id"}),
])
def test_rejects_bad_initdata(client, initdata):
    resp = client.get("/api/events", headers={"X-Telegram-InitData": initdata})
    assert resp.status_code == 401


def test_missing_header(client):
    assert client.get("/api/events").status_code == 401

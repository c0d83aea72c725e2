import pytest

from storage import EventStore


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "reventor_test.sqlite3")


@pytest.fixture()
def make_store(db_path):
    """Async factory: stores must be created inside the test's event loop."""
    async def factory():
        store = EventStore(db_path)
        await store.init()
        return store
    return factory


class FakeSender:
    def __init__(self, fail_for=(), raise_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)

    async def __call__(self, chat_id, text):
        if chat_id in self.raise_for:
            raise ConnectionError("network down")
        self.sent.append((chat_id, text))
        return chat_id not in self.fail_for


@pytest.fixture()
def sender():
    return FakeSender()


@pytest.fixture()
def make_sender():
    return FakeSender

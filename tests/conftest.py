# tests/conftest.py
import os
import logging
import pytest

from chatdispatch.core import log
from chatdispatch.core import metrics
from chatdispatch.core.contracts import Update


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_logging_and_metrics():
    # LOG_LEVEL / LOG_JSON / .env
    log.setup()

    interval = float(os.getenv("METRICS_INTERVAL_TEST", "1.0"))
    json_mode = (os.getenv("LOG_JSON", "0") == "1")
    metrics.start_exporter(interval_sec=interval, json_mode=json_mode,
                           logger=logging.getLogger("chatdispatch.metrics"))
    yield
    metrics.stop_exporter()


@pytest.fixture
def fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


CHAT = {"id": 100, "type": "private"}
USER = {"id": 5, "first_name": "Ann", "username": "ann"}


@pytest.fixture
def make_message():
    def make(update_id: int, text: str, chat_id: int = CHAT["id"]) -> Update:
        return Update.from_dict({
            "update_id": update_id,
            "message": {
                "message_id": 1000 + update_id,
                "chat": {**CHAT, "id": chat_id},
                "from": USER,
                "text": text,
            },
        })
    return make


@pytest.fixture
def make_press():
    def make(update_id: int, data: str) -> Update:
        return Update.from_dict({
            "update_id": update_id,
            "callback_query": {
                "id": f"cq-{update_id}",
                "from": USER,
                "data": data,
                "message": {"message_id": 77, "chat": CHAT, "text": "menu"},
            },
        })
    return make

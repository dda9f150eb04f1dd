import io
import json
import logging

from chatdispatch.core import log
from chatdispatch.core.metrics import Timer, force_emit, inc_counter, set_gauge, snapshot_all


def test_json_handler_writes_one_object_per_line():
    h = log.JsonHandler()
    h.stream = io.StringIO()
    lg = logging.getLogger("chatdispatch.test.json")
    lg.addHandler(h)
    lg.setLevel(logging.DEBUG)
    lg.propagate = False
    try:
        lg.warning("queue depth %d", 7)
        lg.info({"type": "counter", "name": "x", "value": 1.0})
    finally:
        lg.removeHandler(h)
        lg.propagate = True

    first, second = [json.loads(line) for line in h.stream.getvalue().splitlines()]
    assert first["lvl"] == "WARNING"
    assert first["msg"] == "queue depth 7"
    assert first["name"] == "chatdispatch.test.json"
    assert second["msg"] == {"type": "counter", "name": "x", "value": 1.0}


def test_get_namespaces_loggers():
    assert log.get("demo").name == "chatdispatch.demo"
    assert log.get("chatdispatch.core.bus").name == "chatdispatch.core.bus"


def test_setup_is_idempotent_unless_forced():
    root = logging.getLogger()
    log.setup("WARNING", json_mode=False, force=True)
    handlers = list(root.handlers)
    log.setup("DEBUG")
    assert root.handlers == handlers
    assert root.level == logging.WARNING
    log.setup("INFO", json_mode=True, force=True)
    assert isinstance(root.handlers[0], log.JsonHandler)
    log.setup("INFO", json_mode=False, force=True)


def test_metrics_snapshot_and_emit(fresh_metrics, caplog):
    inc_counter("dispatch_total", 2, context="NewMessageContext", result="handled")
    set_gauge("bridge_queue_depth", 3, bridge="b")
    with Timer("bridge_call_ms", method="getMe") as t:
        pass
    assert t.elapsed_ms >= 0.0

    snap = snapshot_all()
    assert snap["counters"] == [{
        "name": "dispatch_total",
        "labels": {"context": "NewMessageContext", "result": "handled"},
        "value": 2.0,
    }]
    assert snap["gauges"][0]["value"] == 3.0
    assert snap["hists"][0]["count"] == 1.0

    with caplog.at_level(logging.INFO, logger="chatdispatch.metrics"):
        force_emit()
    text = caplog.text
    assert "[ctr] dispatch_total" in text
    assert "[hist] bridge_call_ms" in text

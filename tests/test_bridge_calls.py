import asyncio
import threading

import pytest

from chatdispatch.adapters.local_transport import LocalTransport
from chatdispatch.core.bus import BotBridge
from chatdispatch.core.contracts import Request, Response, send_message
from chatdispatch.core.errors import ApiError, RequestFailed, TransportError
from chatdispatch.core.metrics import counter_value


async def wait_pending(transport, n=1, timeout=2.0):
    async def poll():
        while len(transport.pending()) < n:
            await asyncio.sleep(0)
    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_call_success_returns_response():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    task = asyncio.create_task(bridge.execute(send_message(1, "hi")))
    await wait_pending(transport)
    transport.respond(result={"message_id": 9})

    resp = await asyncio.wait_for(task, timeout=2.0)
    assert resp.ok and resp.result == {"message_id": 9}
    assert transport.sent[0].method == "sendMessage"


@pytest.mark.asyncio
async def test_negative_ack_is_logical_failure():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    task = asyncio.create_task(bridge.execute(Request("banChatMember", {"chat_id": 1})))
    await wait_pending(transport)
    transport.respond(ok=False, error_code=403, description="Forbidden")

    with pytest.raises(ApiError) as ei:
        await asyncio.wait_for(task, timeout=2.0)
    err = ei.value
    assert isinstance(err, RequestFailed)
    assert err.method == "banChatMember"
    assert err.error_code == 403
    assert err.description == "Forbidden"
    assert "banChatMember failed with error_code 403 Forbidden" in str(err)


@pytest.mark.asyncio
async def test_transport_failure_carries_cause_and_no_payload():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    task = asyncio.create_task(bridge.execute(Request("getMe")))
    await wait_pending(transport)
    boom = ConnectionError("connection reset")
    transport.fail(boom)

    with pytest.raises(TransportError) as ei:
        await asyncio.wait_for(task, timeout=2.0)
    err = ei.value
    assert err.method == "getMe"
    assert err.cause is boom
    assert err.__cause__ is boom
    assert not hasattr(err, "response")


@pytest.mark.asyncio
async def test_failure_records_caller_call_site():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    async def issue_from_here():
        return await bridge.execute(Request("getMe"))

    task = asyncio.create_task(issue_from_here())
    await wait_pending(transport)
    transport.fail(OSError("down"))

    with pytest.raises(TransportError) as ei:
        await task
    names = [f.name for f in ei.value.call_site]
    assert names[-1] == "issue_from_here"
    assert "issue_from_here" in ei.value.format_call_site()


@pytest.mark.asyncio
async def test_concurrent_calls_completed_out_of_order():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    first = asyncio.create_task(bridge.execute(send_message(1, "a")))
    second = asyncio.create_task(bridge.execute(send_message(2, "b")))
    await wait_pending(transport, 2)
    call_a, call_b = transport.pending()

    transport.respond(call_b.call_id, result="for-b")
    transport.respond(call_a.call_id, result="for-a")

    assert (await first).result == "for-a"
    assert (await second).result == "for-b"


@pytest.mark.asyncio
async def test_one_failure_does_not_touch_other_calls():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    ok_task = asyncio.create_task(bridge.execute(Request("a")))
    bad_task = asyncio.create_task(bridge.execute(Request("b")))
    await wait_pending(transport, 2)

    transport.fail(OSError("x"), transport.pending("b")[0].call_id)
    with pytest.raises(TransportError):
        await bad_task
    assert not ok_task.done()

    transport.respond(transport.pending("a")[0].call_id, result=1)
    assert (await ok_task).result == 1


@pytest.mark.asyncio
async def test_completion_from_foreign_thread():
    transport = LocalTransport()
    bridge = BotBridge(transport)

    task = asyncio.create_task(bridge.execute(Request("getUpdates")))
    await wait_pending(transport)

    th = threading.Thread(target=transport.respond, kwargs={"result": [1, 2]})
    th.start()
    resp = await asyncio.wait_for(task, timeout=2.0)
    th.join()
    assert resp.result == [1, 2]


@pytest.mark.asyncio
async def test_second_completion_is_ignored():
    completions = []

    class Twice:
        def execute(self, request, on_response, on_failure):
            completions.append(request.method)
            on_response(request, Response(ok=True, result="first"))
            on_failure(request, OSError("late"))

    bridge = BotBridge(Twice())
    resp = await bridge.execute(Request("x"))
    await asyncio.sleep(0)
    assert resp.result == "first"
    assert completions == ["x"]


@pytest.mark.asyncio
async def test_synchronous_transport_error_is_transport_failure():
    class Refuses:
        def execute(self, request, on_response, on_failure):
            raise OSError("socket closed")

    bridge = BotBridge(Refuses())
    with pytest.raises(TransportError) as ei:
        await bridge.execute(Request("sendMessage"))
    assert isinstance(ei.value.__cause__, OSError)


@pytest.mark.asyncio
async def test_cancelled_caller_then_late_response(fresh_metrics):
    transport = LocalTransport()
    bridge = BotBridge(transport)

    task = asyncio.create_task(bridge.execute(Request("slow")))
    await wait_pending(transport)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    transport.respond(result="too late")
    await asyncio.sleep(0)
    assert counter_value("bridge_call_total", method="slow", status="cancelled") == 1


@pytest.mark.asyncio
async def test_call_metrics_by_status(fresh_metrics):
    transport = LocalTransport()
    bridge = BotBridge(transport)

    t1 = asyncio.create_task(bridge.execute(Request("m")))
    t2 = asyncio.create_task(bridge.execute(Request("m")))
    await wait_pending(transport, 2)
    transport.respond()
    transport.respond(ok=False, error_code=400, description="Bad Request")
    await t1
    with pytest.raises(ApiError):
        await t2

    assert counter_value("bridge_call_total", method="m", status="ok") == 1
    assert counter_value("bridge_call_total", method="m", status="api_error") == 1

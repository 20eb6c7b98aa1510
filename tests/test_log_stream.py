import asyncio
import threading
import time

from webpilotx.modules.deployments import log_channel
from webpilotx.modules.deployments.log_store import COMPLETION_SENTINEL, INITIAL_LOG_TEXT, DeploymentLog
from webpilotx.modules.deployments.log_stream import stream_deployment_log


class FakeRequest:
    def __init__(self, disconnected=False):
        self.disconnected = disconnected

    async def is_disconnected(self):
        return self.disconnected


def _live_log(deployment_id):
    log = DeploymentLog(deployment_id)
    log.initialize()
    return log


def test_disconnect_stops_watching():
    _live_log(21)
    request = FakeRequest()

    async def consume():
        stream = stream_deployment_log(21, request)
        first = await stream.__anext__()
        assert log_channel.subscriber_count(21) == 1
        request.disconnected = True
        rest = [chunk async for chunk in stream]
        return first, rest

    first, rest = asyncio.run(consume())

    assert first == INITIAL_LOG_TEXT.encode()
    assert rest == []
    assert log_channel.subscriber_count(21) == 0


def test_closing_the_stream_unsubscribes():
    _live_log(22)

    async def consume():
        stream = stream_deployment_log(22, FakeRequest())
        await stream.__anext__()
        await stream.aclose()

    asyncio.run(consume())

    assert log_channel.subscriber_count(22) == 0


def test_stream_ends_with_the_real_sentinel_only():
    log = _live_log(23)

    def writer():
        time.sleep(0.1)
        log.line(COMPLETION_SENTINEL)
        time.sleep(0.1)
        log.line("still building")
        log.complete()

    async def consume():
        return b"".join([chunk async for chunk in stream_deployment_log(23, FakeRequest())])

    thread = threading.Thread(target=writer)
    thread.start()
    body = asyncio.run(asyncio.wait_for(consume(), timeout=20))
    thread.join()

    assert body == log.read()
    assert b"still building" in body
    assert body.endswith(f"\n{COMPLETION_SENTINEL}\n".encode())
    assert log_channel.subscriber_count(23) == 0

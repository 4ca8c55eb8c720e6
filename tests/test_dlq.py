import pytest

from mq_bridge.dlq import DlqPublisher
from mq_bridge.errors import NonRetryableError, RetryableError
from mq_bridge.models import DeadLetterQueueMiddleware, Endpoint
from mq_bridge.outcomes import CanonicalMessage, Sent, SentBatch
from mq_bridge.traits import MessagePublisher


class ScriptedPublisher(MessagePublisher):
    """Plays back scripted outcomes; an exception in the script is raised."""

    def __init__(self, send_script=(), batch_script=(), default_batch=None):
        self.send_script = list(send_script)
        self.batch_script = list(batch_script)
        self.default_batch = default_batch
        self.sent = []
        self.batches = []

    async def send(self, message):
        self.sent.append(message)
        item = self.send_script.pop(0) if self.send_script else Sent()
        if isinstance(item, Exception):
            raise item
        return item

    async def send_batch(self, messages):
        self.batches.append(list(messages))
        if self.batch_script:
            item = self.batch_script.pop(0)
        elif self.default_batch is not None:
            item = self.default_batch
        else:
            item = SentBatch.ack()
        if isinstance(item, Exception):
            raise item
        return item


def config(attempts=3):
    return DeadLetterQueueMiddleware(
        endpoint=Endpoint.new_memory("dlq", 10),
        dlq_retry_attempts=attempts,
        dlq_initial_interval_ms=1,
        dlq_max_interval_ms=2,
        dlq_multiplier=2.0,
    )


def msg(payload, message_id):
    return CanonicalMessage(payload, message_id)


@pytest.mark.asyncio
async def test_success_passes_through():
    response = msg(b"resp", 1)
    inner = ScriptedPublisher(send_script=[Sent(response)])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    result = await publisher.send(msg(b"m", 2))
    assert result.response is response
    assert dlq.sent == []


@pytest.mark.asyncio
async def test_failed_send_goes_to_dlq():
    m = msg(b"m", 3)
    inner = ScriptedPublisher(send_script=[NonRetryableError("boom")])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    result = await publisher.send(m)
    assert result.response is None
    assert dlq.sent == [m]


@pytest.mark.asyncio
async def test_dlq_retries_then_succeeds():
    inner = ScriptedPublisher(send_script=[RetryableError("down")])
    dlq = ScriptedPublisher(send_script=[RetryableError("x"), RetryableError("y"), Sent()])
    publisher = DlqPublisher(inner, config(3), "r", dlq)
    result = await publisher.send(msg(b"m", 4))
    assert result.response is None
    assert len(dlq.sent) == 3


@pytest.mark.asyncio
async def test_dlq_exhausted_raises_retryable():
    inner = ScriptedPublisher(send_script=[NonRetryableError("boom")])
    dlq = ScriptedPublisher(send_script=[NonRetryableError("dlq down")] * 5)
    publisher = DlqPublisher(inner, config(2), "r", dlq)
    with pytest.raises(RetryableError) as info:
        await publisher.send(msg(b"m", 5))
    assert "Primary send failed" in str(info.value)
    assert len(dlq.sent) == 2


@pytest.mark.asyncio
async def test_batch_ack_passes_through():
    inner = ScriptedPublisher(batch_script=[SentBatch.ack()])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    result = await publisher.send_batch([msg(b"a", 1)])
    assert result.is_ack()
    assert dlq.batches == []


@pytest.mark.asyncio
async def test_batch_partial_failure_sends_failed_to_dlq():
    ok_response = msg(b"resp", 10)
    bad = msg(b"bad", 11)
    inner = ScriptedPublisher(batch_script=[SentBatch(responses=[ok_response], failed=[bad])])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    result = await publisher.send_batch([msg(b"good", 12), bad])
    assert result.responses == [ok_response]
    assert result.failed == []
    assert dlq.batches == [[bad]]


@pytest.mark.asyncio
async def test_batch_partial_dlq_retries_only_failed():
    a, b = msg(b"a", 1), msg(b"b", 2)
    inner = ScriptedPublisher(batch_script=[SentBatch(failed=[a, b])])
    dlq = ScriptedPublisher(batch_script=[SentBatch(failed=[b]), SentBatch.ack()])
    publisher = DlqPublisher(inner, config(3), "r", dlq)
    result = await publisher.send_batch([a, b])
    assert result.failed == []
    assert dlq.batches == [[a, b], [b]]


@pytest.mark.asyncio
async def test_batch_partial_dlq_exhausted_raises():
    a = msg(b"a", 1)
    inner = ScriptedPublisher(batch_script=[SentBatch(failed=[a])])
    dlq = ScriptedPublisher(default_batch=SentBatch(failed=[a]))
    publisher = DlqPublisher(inner, config(2), "r", dlq)
    with pytest.raises(RetryableError) as info:
        await publisher.send_batch([a])
    assert "messages remaining" in str(info.value)
    assert len(dlq.batches) == 2


@pytest.mark.asyncio
async def test_batch_complete_failure_sends_all_to_dlq():
    messages = [msg(b"a", 1), msg(b"b", 2)]
    inner = ScriptedPublisher(batch_script=[NonRetryableError("all bad")])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    result = await publisher.send_batch(messages)
    assert result.is_ack()
    assert dlq.batches == [messages]


@pytest.mark.asyncio
async def test_batch_complete_failure_dlq_errors_exhausted():
    inner = ScriptedPublisher(batch_script=[NonRetryableError("all bad")])
    dlq = ScriptedPublisher(batch_script=[RetryableError("dlq")] * 3)
    publisher = DlqPublisher(inner, config(3), "r", dlq)
    with pytest.raises(RetryableError) as info:
        await publisher.send_batch([msg(b"a", 1)])
    assert "DLQ bulk send also failed" in str(info.value)
    assert len(dlq.batches) == 3


@pytest.mark.asyncio
async def test_batch_retryable_error_propagates():
    inner = ScriptedPublisher(batch_script=[RetryableError("conn")])
    dlq = ScriptedPublisher()
    publisher = DlqPublisher(inner, config(), "r", dlq)
    with pytest.raises(RetryableError):
        await publisher.send_batch([msg(b"a", 1)])
    assert dlq.batches == []
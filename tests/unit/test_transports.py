"""Transport tests."""

import pytest

from workflow_runtime.contracts import EventEnvelope
from workflow_runtime.domain.events import WorkflowInstanceStarted
from workflow_runtime.transports.inmemory import InMemoryTransport


def _envelope(aggregate_id: str = "inst-123") -> EventEnvelope:
    return EventEnvelope(
        event=WorkflowInstanceStarted(aggregate_id=aggregate_id, workflow_id="wf-1")
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    envelope = _envelope()

    await transport.publish(envelope.topic, envelope)
    assert [e.message_id for e in transport.pending("WorkflowInstanceStarted")] == [
        envelope.message_id
    ]

    message_received = False
    async for raw_msg, received in transport.subscribe("WorkflowInstanceStarted"):
        assert received.event.aggregate_id == "inst-123"
        assert received.topic == "WorkflowInstanceStarted"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("WorkflowInstanceStarted") == []


@pytest.mark.asyncio
async def test_inmemory_transport_keeps_topics_apart_and_in_order():
    transport = InMemoryTransport()
    first, second = _envelope("a"), _envelope("b")
    await transport.publish("one", first)
    await transport.publish("one", second)
    await transport.publish("two", _envelope("c"))

    received = []
    async for _, envelope in transport.subscribe("one", lifespan=0.2):
        received.append(envelope.event.aggregate_id)

    assert received == ["a", "b"]
    assert len(transport.pending("two")) == 1


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Test Redis transport can be imported and instantiated without a server."""
    try:
        from workflow_runtime.transports.redis import RedisTransport
    except ImportError:
        pytest.fail("RedisTransport should be importable")

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue_name("WorkflowTaskAssigned") == "workflow-runtime:WorkflowTaskAssigned"

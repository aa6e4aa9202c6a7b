from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from workflow_runtime.contracts import EventEnvelope
from workflow_runtime.domain import WorkflowInstance, WorkflowTask
from workflow_runtime.domain import payloads
from workflow_runtime.domain.events import WorkflowInstanceFailed, WorkflowTaskRejected
from workflow_runtime.errors import CorruptRecordError

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _instance_record(**overrides):
    record = WorkflowInstance.create(workflow_id="wf-1", started_at=T0).to_persistence()
    record.update(overrides)
    return record


def test_load_object_accepts_text_and_mappings():
    assert payloads.load_object('{"a": [1, 2]}', "data") == {"a": [1, 2]}
    assert payloads.load_object({"a": 1}, "data") == {"a": 1}
    assert payloads.load_object(None, "data") == {}
    assert payloads.load_object("", "data") == {}


def test_strict_load_rejects_malformed_json():
    with pytest.raises(CorruptRecordError, match="Stored field 'data' is malformed"):
        payloads.load_object("{not json", "data")


def test_lenient_load_falls_back_to_empty(caplog):
    with caplog.at_level("WARNING"):
        value = payloads.load_object("{not json", "variables", strict=False)

    assert value == {}
    assert "variables" in caplog.text


def test_strict_load_rejects_wrong_shape():
    with pytest.raises(CorruptRecordError):
        payloads.load_object("[1, 2, 3]", "context")


def test_reconstitute_strict_vs_lenient():
    record = _instance_record(data="{broken")

    with pytest.raises(CorruptRecordError):
        WorkflowInstance.reconstitute(record["id"], record)

    instance = WorkflowInstance.reconstitute(record["id"], record, strict=False)
    assert instance.data == {}


def test_task_comments_round_trip_through_json():
    task = WorkflowTask.create(instance_id="i", step_id="s", name="n", created_at=T0)
    task.add_comment("hello", now=T0)

    record = task.to_persistence()
    comments = payloads.load_comments(record["comments"])

    assert comments[0].text == "hello"
    assert comments[0].timestamp == T0


def test_malformed_comment_list_is_corrupt():
    with pytest.raises(CorruptRecordError):
        payloads.load_comments('[{"text": "missing timestamp"}]')
    assert payloads.load_comments('[{"text": "x"}]', strict=False) == []


def test_event_payload_excludes_envelope_fields():
    event = WorkflowInstanceFailed(
        aggregate_id="inst-1",
        workflow_id="wf-1",
        error_message="boom",
        error_step="extract",
        emitted_at=T0,
    )

    assert event.payload == {
        "workflow_id": "wf-1",
        "error_message": "boom",
        "error_step": "extract",
    }


def test_events_are_immutable():
    event = WorkflowTaskRejected(
        aggregate_id="t-1", instance_id="i-1", rejected_by="u1", reason="no"
    )
    with pytest.raises(PydanticValidationError):
        event.reason = "yes"


def test_envelope_json_restores_concrete_event_type():
    event = WorkflowTaskRejected(
        aggregate_id="t-1", instance_id="i-1", rejected_by="u1", reason="no", emitted_at=T0
    )
    envelope = EventEnvelope(event=event)

    restored = EventEnvelope.from_json(envelope.to_json())

    assert envelope.topic == "WorkflowTaskRejected"
    assert restored.message_id == envelope.message_id
    assert isinstance(restored.event, WorkflowTaskRejected)
    assert restored.event == event

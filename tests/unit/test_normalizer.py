"""Tests for canonical event -> sink row normalization."""

import json

from hypothesis import given, settings

from observa.events import CanonicalEvent, EventType
from observa.pipeline.normalizer import normalize_event, normalize_events, strip_nulls
from tests.mocks import llm_call, make_event
from tests.strategies import event_batches, json_with_nulls


def _contains_none(value):
    if value is None:
        return True
    if isinstance(value, dict):
        return any(_contains_none(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_none(v) for v in value)
    return False


class TestStripNulls:
    def test_nested_dicts(self):
        assert strip_nulls({"a": None, "b": {"c": None, "d": 1}}) == {"b": {"d": 1}}

    def test_list_items(self):
        assert strip_nulls([1, None, {"x": None}]) == [1, {}]

    def test_falsy_values_kept(self):
        assert strip_nulls({"a": 0, "b": "", "c": False, "d": []}) == {"a": 0, "b": "", "c": False, "d": []}

    @given(json_with_nulls)
    def test_no_nulls_remain(self, value):
        assert not _contains_none(strip_nulls(value)) or value is None


class TestNormalizeEvent:
    def test_required_strings_become_empty(self):
        event = CanonicalEvent.model_validate(llm_call(conversation_id=None, session_id="  "))
        row = normalize_event(event)
        assert row["conversation_id"] == ""
        assert row["session_id"] == ""
        assert row["user_id"] == ""

    def test_optional_fields_stay_null(self):
        event = CanonicalEvent.model_validate(llm_call(agent_name=None))
        row = normalize_event(event)
        assert row["agent_name"] is None
        assert row["version"] is None
        assert row["route"] is None
        assert row["parent_span_id"] is None

    def test_values_preserved(self):
        event = CanonicalEvent.model_validate(
            llm_call(conversation_id="conv-1", agent_name="support-bot", route="/chat")
        )
        row = normalize_event(event)
        assert row["conversation_id"] == "conv-1"
        assert row["agent_name"] == "support-bot"
        assert row["route"] == "/chat"
        assert row["event_type"] == "llm_call"
        assert row["environment"] == "prod"
        assert row["tenant_id"] == event.tenant_id

    def test_attributes_json_without_nulls(self):
        event = CanonicalEvent.model_validate(llm_call(temperature=None))
        attributes = json.loads(normalize_event(event)["attributes_json"])
        assert set(attributes) == {"llm_call"}
        assert "temperature" not in attributes["llm_call"]
        assert attributes["llm_call"]["total_tokens"] == 120

    def test_null_list_items_stripped(self):
        event = CanonicalEvent.model_validate(make_event(
            "tool_call",
            {"tool_name": "t", "result_status": "success", "latency_ms": 3, "args": {"ids": [1, None, 2]}},
        ))
        attributes = json.loads(normalize_event(event)["attributes_json"])
        assert attributes["tool_call"]["args"]["ids"] == [1, 2]

    def test_event_without_variant(self):
        event = CanonicalEvent.model_validate(make_event("feedback"))
        assert json.loads(normalize_event(event)["attributes_json"]) == {}

    def test_every_event_type_normalizes(self):
        for event_type in EventType:
            event = CanonicalEvent.model_validate(make_event(event_type.value))
            assert normalize_event(event)["event_type"] == event_type.value

    @given(event_batches)
    @settings(max_examples=50)
    def test_rows_never_contain_null_attributes(self, batch):
        events = [CanonicalEvent.model_validate(r) for r in batch]
        rows = normalize_events(events)
        assert len(rows) == len(events)
        for row in rows:
            assert isinstance(row["conversation_id"], str)
            assert not _contains_none(json.loads(row["attributes_json"]))

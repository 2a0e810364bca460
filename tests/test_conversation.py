"""Tests for conversation parsing and the reconciliation decision policy."""

from datetime import datetime, timedelta, timezone

import pytest

from futureself.conversation import decide, parse_conversation
from futureself.models import (
    CallRecord,
    CallStatus,
    ConversationDetails,
    ConversationLookup,
    LookupKind,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
STALE = timedelta(minutes=12)


def _call(minutes_ago: float, conversation_id="conv_1", status=CallStatus.DIALING) -> CallRecord:
    started = NOW - timedelta(minutes=minutes_ago)
    return CallRecord(
        id="call_1",
        user_id="u1",
        to_number_e164="+16502530000",
        status=status,
        conversation_id=conversation_id,
        started_at=started,
        created_at=started,
    )


def _found(**details) -> ConversationLookup:
    return ConversationLookup(
        kind=LookupKind.FOUND, status_code=200, details=ConversationDetails(**details)
    )


class TestParseConversation:
    def test_snake_case_top_level(self):
        d = parse_conversation(
            {"conversation_id": "c1", "agent_id": "a1", "status": "Done", "call_duration_secs": 61}
        )
        assert d.status == "done"
        assert d.duration_secs == 61
        assert d.agent_id == "a1"
        assert d.recognised is True

    def test_nested_metadata_camel_case(self):
        d = parse_conversation(
            {"conversationId": "c1", "metadata": {"startTimeUnixSecs": 1000, "callDurationSecs": 30.5}}
        )
        assert d.conversation_id == "c1"
        assert d.start_unix == 1000
        assert d.duration_secs == 30.5

    def test_unknown_shape_flagged(self):
        assert parse_conversation({"foo": "bar"}).recognised is False
        assert parse_conversation(["not", "a", "dict"]).recognised is False

    def test_booleans_are_not_numbers(self):
        d = parse_conversation({"status": "processing", "call_duration_secs": True})
        assert d.duration_secs is None


class TestDecide:
    def test_stale_without_conversation_id_fails(self):
        res = decide(_call(20, conversation_id=None), None, NOW, STALE)
        assert res.status == CallStatus.FAILED
        assert res.reason == "stale_no_conversation_id"

    def test_fresh_without_conversation_id_left_alone(self):
        assert decide(_call(2, conversation_id=None), None, NOW, STALE) is None

    def test_not_found_only_when_stale(self):
        lookup = ConversationLookup(kind=LookupKind.NOT_FOUND, status_code=404)
        assert decide(_call(5), lookup, NOW, STALE) is None
        assert decide(_call(30), lookup, NOW, STALE).reason == "stale_conversation_not_found"

    def test_provider_error_code_in_reason(self):
        lookup = ConversationLookup(kind=LookupKind.ERROR, status_code=503)
        assert decide(_call(30), lookup, NOW, STALE).reason == "stale_eleven_error_503"

    def test_end_time_preferred(self):
        end = NOW - timedelta(minutes=1)
        res = decide(
            _call(5),
            _found(status="done", end_unix=end.timestamp(), duration_secs=90),
            NOW,
            STALE,
        )
        assert res.status == CallStatus.COMPLETED
        assert res.fields["ended_at"] == end
        assert res.fields["duration_seconds"] == 90
        assert res.fields["failure_reason"] is None

    def test_provider_start_plus_duration(self):
        start = NOW - timedelta(minutes=4)
        res = decide(_call(5), _found(start_unix=start.timestamp(), duration_secs=60), NOW, STALE)
        assert res.fields["ended_at"] == start + timedelta(seconds=60)

    def test_local_start_plus_duration(self):
        call = _call(5)
        res = decide(call, _found(duration_secs=45), NOW, STALE)
        assert res.status == CallStatus.COMPLETED
        assert res.fields["ended_at"] == call.started_at + timedelta(seconds=45)

    def test_zero_duration_counts(self):
        res = decide(_call(5), _found(duration_secs=0), NOW, STALE)
        assert res.status == CallStatus.COMPLETED
        assert res.fields["duration_seconds"] == 0

    def test_stale_unknown_state(self):
        res = decide(_call(30), _found(status="weird"), NOW, STALE)
        assert res.reason == "stale_unknown_state"

    def test_fresh_unknown_state_left_alone(self):
        assert decide(_call(3), _found(status="weird"), NOW, STALE) is None

    def test_live_status_moves_dialing_to_in_progress(self):
        res = decide(_call(3), _found(status="in-progress"), NOW, STALE)
        assert res.status == CallStatus.IN_PROGRESS

    def test_provider_failed_status(self):
        res = decide(_call(3), _found(status="failed"), NOW, STALE)
        assert res.status == CallStatus.FAILED
        assert res.reason == "provider_reported_failed"

    @pytest.mark.parametrize("keyword", ["completed", "ended", "done", "finished"])
    def test_terminal_keywords_complete_stale_calls_at_now(self, keyword):
        call = _call(30)
        res = decide(call, _found(status=keyword), NOW, STALE)
        assert res.status == CallStatus.COMPLETED
        assert res.fields["ended_at"] == NOW
        assert res.fields["duration_seconds"] == 30 * 60

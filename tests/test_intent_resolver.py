"""Tests for payload → intent resolution."""
import json
from datetime import datetime, timezone

import pytest

from core.intent_resolver import (
    call_ended_at,
    call_is_active,
    extract_transcript,
    intent_from_ended_reason,
    map_whatsapp_reply,
    parse_webhook,
    resolve_call_outcome,
    resolve_from_call_details,
    resolve_from_webhook,
    scan_structured,
    scan_transcript,
)
from models.schemas import CallOutcome, Intent


class TestStructuredScan:
    def test_structured_data_string(self):
        body = {"message": {"analysis": {"structuredData": {"intent": "confirmed"}}}}
        assert scan_structured(body) == Intent.CONFIRM

    def test_boolean_flag_key(self):
        body = {"message": {"analysis": {"structuredData": {"wrong_number": True}}}}
        assert scan_structured(body) == Intent.WRONG_NUMBER

    def test_json_encoded_tool_arguments(self):
        body = {"message": {"toolCalls": [
            {"function": {"name": "record", "arguments": json.dumps({"intent": "call_later"})}},
        ]}}
        assert scan_structured(body) == Intent.RECALL_REQUEST

    def test_structured_outputs_nested(self):
        body = {"structuredOutputs": {"abc": {"name": "order", "result": {"decision": "cancel"}}}}
        assert scan_structured(body) == Intent.CANCEL

    def test_unknown_shapes_resolve_to_none(self):
        assert scan_structured(None) is None
        assert scan_structured("confirm") is None
        assert scan_structured({"message": {"analysis": {"summary": "customer talked"}}}) is None

    def test_malformed_json_string_ignored(self):
        assert scan_structured({"analysis": {"structuredData": "{not json"}}) is None


class TestEndedReason:
    @pytest.mark.parametrize("reason,intent", [
        ("customer-did-not-answer", Intent.RECALL_REQUEST),
        ("no-answer", Intent.RECALL_REQUEST),
        ("customer-busy", Intent.BUSY),
        ("machine-detected", Intent.RECALL_REQUEST),
        ("customer-ended-call", None),
        ("", None),
        (None, None),
    ])
    def test_mapping(self, reason, intent):
        assert intent_from_ended_reason(reason) == intent


class TestTranscript:
    def test_hindi_confirmation(self):
        assert scan_transcript("Assistant: aapka order. Customer: theek hai, order kar do") == Intent.CONFIRM

    def test_cancel_wins_over_confirm(self):
        assert scan_transcript("Customer: cancel kar do mat karo") == Intent.CANCEL

    def test_wrong_number_wins_anywhere(self):
        text = "Customer: this is a wrong number. Assistant: sorry. Customer: haan ok bye"
        assert scan_transcript(text) == Intent.WRONG_NUMBER

    def test_only_tail_sentences_count(self):
        text = "Customer: yes. Assistant: one. Assistant: two. Assistant: three."
        assert scan_transcript(text) is None

    def test_empty(self):
        assert scan_transcript("") is None
        assert scan_transcript(None) is None

    def test_extract_from_messages(self):
        body = {"message": {"artifact": {"messages": [{"content": "hello"}, {"text": "haan"}]}}}
        assert extract_transcript(body) == "hello haan"


class TestWebhookResolution:
    def test_parse_both_shapes(self):
        nested = parse_webhook({"message": {"type": "end-of-call-report", "call": {"id": "c1"}}})
        flat = parse_webhook({"type": "end-of-call-report", "call": {"id": "c1"}})
        assert nested.provider_call_id == flat.provider_call_id == "c1"
        assert nested.is_terminal and flat.is_terminal

    def test_metadata_extracted(self):
        event = parse_webhook({"message": {"type": "status-update",
                                           "call": {"id": "c1", "metadata": {"callLogId": "l1"}}}})
        assert event.metadata == {"callLogId": "l1"}
        assert event.is_in_progress

    def test_structured_first(self):
        body = {"message": {
            "type": "end-of-call-report",
            "endedReason": "customer-busy",
            "analysis": {"structuredData": {"intent": "confirm"}},
        }}
        assert resolve_from_webhook(body) == (Intent.CONFIRM, "structured")

    def test_ended_reason_second(self):
        body = {"message": {"type": "end-of-call-report", "endedReason": "customer-busy"}}
        assert resolve_from_webhook(body) == (Intent.BUSY, "ended_reason")

    def test_transcript_third(self):
        body = {"message": {
            "type": "end-of-call-report",
            "endedReason": "customer-ended-call",
            "artifact": {"transcript": "Customer: theek hai, order kar do"},
        }}
        assert resolve_from_webhook(body) == (Intent.CONFIRM, "transcript")

    def test_short_transcript_skipped(self):
        body = {"message": {"type": "end-of-call-report", "transcript": "haan"}}
        assert resolve_from_webhook(body) == (None, "")

    def test_non_terminal_without_structured_data(self):
        body = {"message": {"type": "status-update", "endedReason": "customer-busy"}}
        assert resolve_from_webhook(body) == (None, "")


class TestCallDetails:
    def test_not_connected(self):
        assert resolve_from_call_details({"status": "ended", "endedReason": "customer-busy"}) == Intent.BUSY
        assert resolve_from_call_details(
            {"status": "ended", "endedReason": "customer-did-not-answer"}) == Intent.RECALL_REQUEST

    def test_active_call_unresolved(self):
        details = {"status": "in-progress", "analysis": {"structuredData": {"intent": "confirm"}}}
        assert resolve_from_call_details(details) is None
        assert call_is_active(details)

    def test_analysis_on_ended_call(self):
        details = {"status": "ended", "endedReason": "customer-ended-call",
                   "analysis": {"structuredData": {"intent": "cancel"}}}
        assert resolve_from_call_details(details) == Intent.CANCEL

    def test_ended_at_parsing(self):
        assert call_ended_at({"endedAt": "2026-03-01T10:00:00Z"}) == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert call_ended_at({"endedAt": "garbage"}) is None
        assert call_ended_at({}) is None


class TestCallOutcome:
    def test_answered(self):
        assert resolve_call_outcome("customer-ended-call", None, "end-of-call-report") == CallOutcome.ANSWERED

    def test_failed(self):
        assert resolve_call_outcome("assistant-error", None, "end-of-call-report") == CallOutcome.FAILED

    def test_pending_reason(self):
        assert resolve_call_outcome("voicemail", None, "end-of-call-report") is None

    def test_unknown_reason_on_end_event_is_answered(self):
        assert resolve_call_outcome("weird-reason", None, "end-of-call-report") == CallOutcome.ANSWERED

    def test_unknown_reason_elsewhere(self):
        assert resolve_call_outcome("weird-reason", None, "status-update") is None


class TestWhatsAppReply:
    @pytest.mark.parametrize("text,intent", [
        ("1", Intent.CONFIRM), (" YES ", Intent.CONFIRM), ("haan", Intent.CONFIRM),
        ("2", Intent.CANCEL), ("nahi", Intent.CANCEL),
        ("3", Intent.WRONG_NUMBER),
        ("hello", None), ("", None), (None, None),
    ])
    def test_mapping(self, text, intent):
        assert map_whatsapp_reply(text) == intent

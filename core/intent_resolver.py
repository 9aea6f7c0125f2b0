"""
Intent Resolver — Pure mapping from provider payloads to intents.

Inputs it understands:
  - voice-provider webhook bodies and call-by-id documents (any nesting)
  - provider end-of-call reason codes
  - free-text transcripts (English + Hindi/Marathi transliterations)
  - WhatsApp reply texts

Resolution order for an order-confirmation call:
    structured data > end reason > transcript > provider quick check > polling

Payload shape variance is handled by ExtractionRule tables: each rule is a
named, ordered list of key paths, tried first to last. No function in this
module raises on malformed input; unknown shapes resolve to None.
"""
from __future__ import annotations

import json
import re
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from models.schemas import CallOutcome, Intent

logger = structlog.get_logger()

MAX_SCAN_DEPTH = 8
MIN_TRANSCRIPT_LENGTH = 20
TRANSCRIPT_TAIL_SENTENCES = 3

ASSISTANT_INTENT_MAP: dict[str, Intent] = {
    "confirm": Intent.CONFIRM,
    "confirmed": Intent.CONFIRM,
    "confirming": Intent.CONFIRM,
    "accepted": Intent.CONFIRM,
    "yes": Intent.CONFIRM,
    "cancel": Intent.CANCEL,
    "cancelled": Intent.CANCEL,
    "no": Intent.CANCEL,
    "busy": Intent.BUSY,
    "recall": Intent.RECALL_REQUEST,
    "call_later": Intent.RECALL_REQUEST,
    "pending": Intent.RECALL_REQUEST,
    "wrong_number": Intent.WRONG_NUMBER,
}

WHATSAPP_REPLY_MAP: dict[str, Intent] = {
    "1": Intent.CONFIRM, "yes": Intent.CONFIRM, "confirm": Intent.CONFIRM,
    "haan": Intent.CONFIRM, "ha": Intent.CONFIRM,
    "2": Intent.CANCEL, "no": Intent.CANCEL, "cancel": Intent.CANCEL,
    "nahi": Intent.CANCEL, "nako": Intent.CANCEL,
    "3": Intent.WRONG_NUMBER,
}

# Voice-provider event types
TERMINAL_EVENTS = frozenset({"end-of-call-report", "call.completed", "assistant.completed"})
IN_PROGRESS_EVENTS = frozenset({"call.started", "status-update"})
FAILED_EVENTS = frozenset({"call.failed", "call-failed"})
NO_ANSWER_EVENTS = frozenset({"call.no-answer", "no-answer"})

# Provider call statuses that mean the call has not finished yet
ACTIVE_CALL_STATUSES = frozenset({"queued", "ringing", "in-progress", "scheduled"})

# Reasons reported when a call ends without ever connecting
NOT_CONNECTED_REASONS = frozenset({
    "customer-did-not-answer", "customer-busy", "no-answer", "busy", "machine-detected",
})

# Generic (non-order) flow reason sets
ANSWERED_REASONS = frozenset({
    "customer-ended-call", "assistant-ended-call", "assistant-ended-call-with-hangup",
    "answered", "completed", "call-ended", "hangup",
})
FAILED_REASONS = frozenset({
    "assistant-error", "pipeline-error", "server-error", "error", "failed", "cancelled",
})
PENDING_REASONS = frozenset({
    "no-answer", "voicemail", "busy", "pending", "queued", "ringing",
    "in-progress", "in_progress",
})


# ──────────────────────────────────────────────────────────────
#  Extraction rules
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractionRule:
    """A named list of key paths; extract() returns the first non-empty hit."""
    name: str
    paths: tuple[tuple[str, ...], ...] = field(default_factory=tuple)

    def extract(self, payload: Any) -> Any:
        for path in self.paths:
            value = _dig(payload, path)
            if value not in (None, "", [], {}):
                return value
        return None


def _dig(payload: Any, path: tuple[str, ...]) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


INTENT_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule("analysis", (("analysis",), ("message", "analysis"))),
    ExtractionRule("artifact", (("artifact",), ("message", "artifact"), ("call", "artifact"))),
    ExtractionRule("structuredData", (
        ("structuredData",), ("message", "structuredData"), ("analysis", "structuredData"),
    )),
    ExtractionRule("structuredOutputs", (
        ("structuredOutputs",), ("message", "structuredOutputs"), ("analysis", "structuredOutputs"),
    )),
    ExtractionRule("toolCalls", (("toolCalls",), ("message", "toolCalls"))),
    ExtractionRule("successEvaluation", (
        ("analysis", "successEvaluation"), ("message", "analysis", "successEvaluation"),
    )),
)

EVENT_TYPE_RULE = ExtractionRule("type", (("message", "type"), ("type",)))
EVENT_CALL_RULE = ExtractionRule("call", (("message", "call"), ("call",), ("message", "artifact")))
METADATA_RULE = ExtractionRule("metadata", (
    ("message", "call", "metadata"), ("call", "metadata"), ("message", "metadata"), ("metadata",),
))
ENDED_REASON_RULE = ExtractionRule("endedReason", (
    ("message", "endedReason"), ("endedReason",), ("message", "call", "endedReason"),
))
TRANSCRIPT_RULE = ExtractionRule("transcript", (
    ("message", "artifact", "transcript"), ("message", "transcript"), ("transcript",),
))

# Applied to the `call` object of a generic-flow webhook
CALL_ENDED_REASON_RULE = ExtractionRule("endedReason", (
    ("endedReason",), ("ended_reason",), ("analysis", "endedReason"), ("analysis", "ended_reason"),
))
CALL_STATUS_RULE = ExtractionRule("status", (("status",), ("callStatus",), ("call_status",)))

# Applied to a call-by-id document
DETAILS_TRANSCRIPT_RULE = ExtractionRule("transcript", (("artifact", "transcript"), ("transcript",)))


# ──────────────────────────────────────────────────────────────
#  Structured-data scan
# ──────────────────────────────────────────────────────────────

def _scan_value(value: Any, depth: int) -> Optional[Intent]:
    if value is None or depth > MAX_SCAN_DEPTH:
        return None

    if isinstance(value, str):
        text = value.strip()
        lowered = text.lower()
        if lowered in ASSISTANT_INTENT_MAP:
            return ASSISTANT_INTENT_MAP[lowered]
        if text[:1] in ("{", "["):
            try:
                parsed = json.loads(text)
            except ValueError:
                return None
            return _scan_value(parsed, depth + 1)
        return None

    if isinstance(value, (list, tuple)):
        for item in value:
            found = _scan_value(item, depth + 1)
            if found:
                return found
        return None

    if isinstance(value, dict):
        # values before keys
        for item in value.values():
            if isinstance(item, (str, dict, list)):
                found = _scan_value(item, depth + 1)
                if found:
                    return found
        for key, item in value.items():
            name = str(key).strip().lower()
            if name in ASSISTANT_INTENT_MAP and (
                item is True or str(item).strip().lower() in ("true", "yes")
            ):
                return ASSISTANT_INTENT_MAP[name]

    return None


def scan_structured(payload: Any) -> Optional[Intent]:
    """Search the known AI-output locations of a payload for an intent."""
    if not isinstance(payload, dict):
        return None
    for rule in INTENT_RULES:
        data = rule.extract(payload)
        if data is None:
            continue
        found = _scan_value(data, 0)
        if found:
            logger.debug("intent_structured_match", rule=rule.name, intent=found.value)
            return found
    return None


# ──────────────────────────────────────────────────────────────
#  End reasons
# ──────────────────────────────────────────────────────────────

def intent_from_ended_reason(reason: Any) -> Optional[Intent]:
    """Order flow: a call that never connected → BUSY or RECALL_REQUEST."""
    text = str(reason or "").strip().lower()
    if not text:
        return None
    if "customer-did-not-answer" in text or "no-answer" in text:
        return Intent.RECALL_REQUEST
    if "busy" in text:
        return Intent.BUSY
    if "machine-detected" in text:
        return Intent.RECALL_REQUEST
    return None


def resolve_call_outcome(ended_reason: Any, call_status: Any, event_type: Any) -> Optional[CallOutcome]:
    """
    Generic flow: classify an end-of-call event as answered or failed.
    None means the call is still in flight and the retry sweep owns it.
    """
    reason = str(ended_reason or "").strip().lower()
    status = str(call_status or "").strip().lower()
    etype = str(event_type or "").strip().lower()

    if reason in ANSWERED_REASONS or status in ANSWERED_REASONS:
        return CallOutcome.ANSWERED
    if reason in FAILED_REASONS or status in FAILED_REASONS:
        return CallOutcome.FAILED
    if reason in PENDING_REASONS or status in PENDING_REASONS:
        return None
    # unknown reason on an end event: completed calls must not stay "calling"
    if etype in ("end-of-call-report", "call.completed"):
        return CallOutcome.ANSWERED
    return None


# ──────────────────────────────────────────────────────────────
#  Transcripts
# ──────────────────────────────────────────────────────────────

_WRONG_NUMBER_PATTERN = re.compile(r"\bwrong number\b")
_CANCEL_PATTERN = re.compile(r"\b(cancel|nahi|nahi chahiye|cancelled|mat karo|nako|no)\b")
_CONFIRM_PATTERN = re.compile(
    r"\b(haan|ha|yes|confirm|confirmed|ok|okay|theek hai|thik hai|acha thik hai|order kar do|pakka)\b"
)
_SENTENCE_SPLIT = re.compile(r"[.!?\n]")


def scan_transcript(transcript: Any) -> Optional[Intent]:
    """
    Keyword match over a transcript. A wrong-number phrase anywhere wins;
    otherwise only the last few sentences count, cancel before confirm.
    """
    if not isinstance(transcript, str) or not transcript.strip():
        return None
    text = transcript.lower()

    if _WRONG_NUMBER_PATTERN.search(text):
        return Intent.WRONG_NUMBER

    parts = [p for p in _SENTENCE_SPLIT.split(text) if p.strip()]
    tail = " ".join(parts[-TRANSCRIPT_TAIL_SENTENCES:])

    if _CANCEL_PATTERN.search(tail):
        return Intent.CANCEL
    if _CONFIRM_PATTERN.search(tail):
        return Intent.CONFIRM
    return None


def extract_transcript(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    transcript = TRANSCRIPT_RULE.extract(body)
    if isinstance(transcript, str):
        return transcript
    messages = _dig(body, ("message", "artifact", "messages"))
    if isinstance(messages, list):
        texts = [
            str(m.get("content") or m.get("text"))
            for m in messages
            if isinstance(m, dict) and (m.get("content") or m.get("text"))
        ]
        if texts:
            return " ".join(texts)
    return None


def _usable_transcript(transcript: Optional[str]) -> bool:
    return isinstance(transcript, str) and len(transcript.strip()) > MIN_TRANSCRIPT_LENGTH


# ──────────────────────────────────────────────────────────────
#  Webhook bodies
# ──────────────────────────────────────────────────────────────

@dataclass
class WebhookEvent:
    """Normalised view of a voice-provider webhook body."""
    event_type: str = ""
    call: dict[str, Any] = field(default_factory=dict)
    provider_call_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ended_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    @property
    def is_in_progress(self) -> bool:
        return self.event_type in IN_PROGRESS_EVENTS


def parse_webhook(body: Any) -> WebhookEvent:
    """Accepts both `{type, call}` and `{message: {type, call}}` shapes."""
    if not isinstance(body, dict):
        return WebhookEvent()
    call = EVENT_CALL_RULE.extract(body)
    call = call if isinstance(call, dict) else {}
    metadata = METADATA_RULE.extract(body)
    ended_reason = ENDED_REASON_RULE.extract(body) or CALL_ENDED_REASON_RULE.extract(call)
    return WebhookEvent(
        event_type=str(EVENT_TYPE_RULE.extract(body) or ""),
        call=call,
        provider_call_id=call.get("id") or None,
        metadata=metadata if isinstance(metadata, dict) else {},
        ended_reason=str(ended_reason) if ended_reason else None,
    )


def resolve_from_webhook(body: Any, event: WebhookEvent = None) -> tuple[Optional[Intent], str]:
    """
    Resolve an order-flow webhook without touching the network.
    Returns (intent, source) where source names the path that matched.
    """
    intent = scan_structured(body)
    if intent:
        return intent, "structured"

    event = event or parse_webhook(body)
    if not event.is_terminal:
        return None, ""

    intent = intent_from_ended_reason(event.ended_reason)
    if intent:
        return intent, "ended_reason"

    transcript = extract_transcript(body)
    if _usable_transcript(transcript):
        intent = scan_transcript(transcript)
        if intent:
            return intent, "transcript"
    return None, ""


# ──────────────────────────────────────────────────────────────
#  Call-by-id documents
# ──────────────────────────────────────────────────────────────

def call_is_active(details: Any) -> bool:
    if not isinstance(details, dict):
        return False
    return str(details.get("status") or "").lower() in ACTIVE_CALL_STATUSES


def call_ended_at(details: Any) -> Optional[datetime]:
    if not isinstance(details, dict):
        return None
    raw = details.get("endedAt")
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def resolve_from_call_details(details: Any) -> Optional[Intent]:
    """Provider quick check: intent from a fetched call document, if any."""
    if not isinstance(details, dict):
        return None
    status = str(details.get("status") or "").lower()
    reason = str(details.get("endedReason") or "").lower()

    if status == "ended" and reason in NOT_CONNECTED_REASONS:
        return Intent.BUSY if "busy" in reason else Intent.RECALL_REQUEST
    if status in ACTIVE_CALL_STATUSES:
        return None

    intent = scan_structured(details)
    if intent:
        return intent

    transcript = DETAILS_TRANSCRIPT_RULE.extract(details)
    if _usable_transcript(transcript):
        return scan_transcript(transcript)
    return None


# ──────────────────────────────────────────────────────────────
#  WhatsApp replies
# ──────────────────────────────────────────────────────────────

def map_whatsapp_reply(body: Any) -> Optional[Intent]:
    if not isinstance(body, str):
        return None
    return WHATSAPP_REPLY_MAP.get(body.strip().lower())

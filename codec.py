"""Translation between the downstream wire formats and the relay's internal frames.

Two downstream dialects share one relay:

* Telephony – Twilio Media Streams, ``{"event": ...}`` envelopes carrying
  base64 μ-law 8 kHz audio under ``media.payload``.
* App – the mobile client, ``{"type": ...}`` envelopes carrying base64
  PCM16 audio under ``data``.

Everything here is pure: decoding never raises, it returns ``ParseError``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class SessionKind(str, Enum):
    TELEPHONY = "telephony"
    APP = "app"


@dataclass(frozen=True)
class AudioChunk:
    """One inbound audio frame, still base64 encoded."""

    payload: str


@dataclass(frozen=True)
class ControlEvent:
    """A non-audio downstream message.

    ``name`` is one of ``start``, ``stop``, ``update_context`` or ``ignored``.
    """

    name: str
    stream_sid: Optional[str] = None
    call_sid: Optional[str] = None
    analysis_contexts: Optional[List[Dict[str, Any]]] = None
    raw_event: Optional[str] = None


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = field(default="", repr=False)


DownstreamFrame = Union[AudioChunk, ControlEvent, ParseError]

# Twilio sends these besides start/media/stop; they carry nothing the relay needs.
_IGNORED_TELEPHONY_EVENTS = {"connected", "mark", "dtmf"}


def _load_object(raw_message: Union[str, bytes]) -> Union[Dict[str, Any], ParseError]:
    if isinstance(raw_message, bytes):
        try:
            raw_message = raw_message.decode("utf-8")
        except UnicodeDecodeError:
            return ParseError("frame is not valid UTF-8")
    try:
        data = json.loads(raw_message)
    except (json.JSONDecodeError, TypeError):
        return ParseError("malformed JSON", raw_message[:200])
    if not isinstance(data, dict):
        return ParseError("frame is not a JSON object", raw_message[:200])
    return data


def _extract_analysis_contexts(data: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Normalise ``analysisContextList`` / ``analysisContext`` to a list.

    Returns None when the message carries neither field.
    """
    context_list = data.get("analysisContextList")
    if isinstance(context_list, list) and context_list:
        return [ctx for ctx in context_list if isinstance(ctx, dict)]
    single = data.get("analysisContext")
    if isinstance(single, dict):
        return [single]
    return None


def _decode_telephony(data: Dict[str, Any]) -> DownstreamFrame:
    event = data.get("event")
    if event == "media":
        media = data.get("media")
        payload = media.get("payload") if isinstance(media, dict) else None
        if not isinstance(payload, str) or not payload:
            return ParseError("media frame without payload")
        return AudioChunk(payload)
    if event == "start":
        start = data.get("start")
        if not isinstance(start, dict):
            return ParseError("start frame without start block")
        stream_sid = start.get("streamSid") or data.get("streamSid")
        if not stream_sid:
            return ParseError("start frame without streamSid")
        return ControlEvent("start", stream_sid=stream_sid, call_sid=start.get("callSid"))
    if event == "stop":
        return ControlEvent("stop")
    if event in _IGNORED_TELEPHONY_EVENTS:
        return ControlEvent("ignored", raw_event=event)
    return ParseError(f"unknown telephony event {event!r}")


def _decode_app(data: Dict[str, Any]) -> DownstreamFrame:
    msg_type = data.get("type")
    if msg_type == "audio":
        payload = data.get("data")
        if not isinstance(payload, str) or not payload:
            return ParseError("audio message without data")
        return AudioChunk(payload)
    if msg_type == "start_app":
        return ControlEvent("start", analysis_contexts=_extract_analysis_contexts(data))
    if msg_type == "update_context":
        return ControlEvent("update_context", analysis_contexts=_extract_analysis_contexts(data))
    if msg_type == "stop":
        return ControlEvent("stop")
    return ParseError(f"unknown app message type {msg_type!r}")


def decode_downstream_frame(session_kind: SessionKind, raw_message: Union[str, bytes]) -> DownstreamFrame:
    """Decode one downstream message for the given session kind."""
    data = _load_object(raw_message)
    if isinstance(data, ParseError):
        return data
    if session_kind is SessionKind.TELEPHONY:
        return _decode_telephony(data)
    return _decode_app(data)


def encode_upstream_audio_for_downstream(
    session_kind: SessionKind, base64_audio: str, stream_sid: Optional[str] = None
) -> Optional[str]:
    """Wrap an upstream audio delta for the downstream peer.

    Telephony frames need the stream id; without it the chunk is dropped (None).
    """
    if session_kind is SessionKind.TELEPHONY:
        if not stream_sid:
            return None
        return json.dumps({"event": "media", "streamSid": stream_sid, "media": {"payload": base64_audio}})
    return json.dumps({"type": "audio", "data": base64_audio})


def encode_clear_signal(session_kind: SessionKind, stream_sid: Optional[str] = None) -> Optional[str]:
    """Barge-in signal: Twilio ``clear`` or the app's ``interrupt`` advisory."""
    if session_kind is SessionKind.TELEPHONY:
        if not stream_sid:
            return None
        return json.dumps({"event": "clear", "streamSid": stream_sid})
    return json.dumps({"type": "interrupt"})


def encode_transcript(text: str, role: str) -> str:
    return json.dumps({"type": "transcript", "text": text, "role": role}, ensure_ascii=False)


def encode_session_started() -> str:
    return json.dumps({"type": "session_started"})


def encode_error(error: str) -> str:
    return json.dumps({"type": "error", "error": error}, ensure_ascii=False)

import asyncio
import json
import os
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from codec import SessionKind
from utils import logger

OPENAI_REALTIME_URL = os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime")
OPENAI_REALTIME_MODEL = os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17")
REALTIME_VOICE = os.getenv("REALTIME_VOICE", "shimmer")
TRANSCRIPTION_LANGUAGE = os.getenv("TRANSCRIPTION_LANGUAGE", "ko")
CONNECT_TIMEOUT_SEC = 10


@dataclass(frozen=True)
class TurnDetection:
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 1500

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "server_vad",
            "threshold": self.threshold,
            "prefix_padding_ms": self.prefix_padding_ms,
            "silence_duration_ms": self.silence_duration_ms,
        }


@dataclass(frozen=True)
class SpeechSessionConfig:
    """Handshake sent once when an upstream session opens."""

    audio_format: str
    turn_detection: TurnDetection
    voice: str = REALTIME_VOICE
    transcription_model: str = "whisper-1"
    language: str = TRANSCRIPTION_LANGUAGE
    modalities: tuple = ("text", "audio")

    def to_session_update(self, instructions: str) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": list(self.modalities),
                "instructions": instructions,
                "voice": self.voice,
                "input_audio_format": self.audio_format,
                "output_audio_format": self.audio_format,
                "input_audio_transcription": {
                    "model": self.transcription_model,
                    "language": self.language,
                },
                "turn_detection": self.turn_detection.to_payload(),
            },
        }


# Phone callers pause longer mid-sentence than app users, so the phone preset
# waits longer before it considers a turn finished.
TELEPHONY_SESSION_CONFIG = SpeechSessionConfig(
    audio_format="g711_ulaw",
    turn_detection=TurnDetection(threshold=0.5, prefix_padding_ms=500, silence_duration_ms=2000),
)
APP_SESSION_CONFIG = SpeechSessionConfig(
    audio_format="pcm16",
    turn_detection=TurnDetection(threshold=0.5, prefix_padding_ms=300, silence_duration_ms=1500),
)


def config_for(session_kind: SessionKind) -> SpeechSessionConfig:
    if session_kind is SessionKind.TELEPHONY:
        return TELEPHONY_SESSION_CONFIG
    return APP_SESSION_CONFIG


# ---------------------------------------------------------------------------
# Normalised upstream events
# ---------------------------------------------------------------------------

AUDIO_DELTA = "audioDelta"
OUTPUT_ITEM_STARTED = "outputItemStarted"
TURN_STARTED = "turnStarted"
INPUT_TRANSCRIPT_DONE = "inputTranscriptDone"
OUTPUT_TRANSCRIPT_DONE = "outputTranscriptDone"
ERROR = "error"
CLOSED = "closed"


@dataclass(frozen=True)
class UpstreamEvent:
    kind: str
    audio: Optional[str] = None
    item_id: Optional[str] = None
    text: Optional[str] = None
    detail: Optional[str] = None


def normalize_upstream_event(event: Dict[str, Any]) -> Optional[UpstreamEvent]:
    """Map one realtime protocol event onto the relay's small event union.

    Returns None for events the relay does not act on.
    """
    event_type = event.get("type")
    if event_type == "response.audio.delta":
        delta = event.get("delta")
        return UpstreamEvent(AUDIO_DELTA, audio=delta) if delta else None
    if event_type == "response.output_item.added":
        item = event.get("item") or {}
        item_id = item.get("id") if isinstance(item, dict) else None
        return UpstreamEvent(OUTPUT_ITEM_STARTED, item_id=item_id) if item_id else None
    if event_type == "input_audio_buffer.speech_started":
        return UpstreamEvent(TURN_STARTED)
    if event_type == "conversation.item.input_audio_transcription.completed":
        return UpstreamEvent(INPUT_TRANSCRIPT_DONE, text=event.get("transcript") or "")
    if event_type == "response.audio_transcript.done":
        return UpstreamEvent(OUTPUT_TRANSCRIPT_DONE, text=event.get("transcript") or "")
    if event_type == "error":
        error = event.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code") or json.dumps(error)
        else:
            detail = str(error)
        return UpstreamEvent(ERROR, detail=detail)
    return None


EventHandler = Callable[[UpstreamEvent], Awaitable[None]]


class RealtimeSessionClient:
    """One outbound connection to the realtime speech endpoint.

    Owned by exactly one relay session. Transport failures never raise out of
    this class: they are delivered to subscribers as ``error`` events, and an
    upstream close that we did not ask for is delivered as ``closed``.
    """

    def __init__(
        self,
        session_label: str,
        api_key: Optional[str] = None,
        url: str = OPENAI_REALTIME_URL,
        model: str = OPENAI_REALTIME_MODEL,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        self.session_label = session_label
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
        self.url = f"{url}?model={model}"
        self._connector = connector
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._handlers: List[EventHandler] = []
        self._closing = False
        self._closed = False
        self.config: Optional[SpeechSessionConfig] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing and not self._closed

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def _emit(self, event: UpstreamEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"❌ [UPSTREAM] Handler error on {event.kind} for session {self.session_label}: {e}")
                logger.error(traceback.format_exc())

    async def open(self, config: SpeechSessionConfig, initial_instructions: str) -> bool:
        """Connect and send the session handshake.

        Returns False (after emitting an ``error`` event) when the connection
        or the handshake send fails.
        """
        if self._closed or self._closing:
            return False
        self.config = config
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            logger.info(f"🔌 [UPSTREAM] Connecting realtime session for {self.session_label}")
            self._ws = await asyncio.wait_for(
                self._connector(self.url, additional_headers=headers, max_size=None),
                timeout=CONNECT_TIMEOUT_SEC,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"❌ [UPSTREAM] Connect failed for {self.session_label}: {e!r}")
            self._ws = None
            await self._emit(UpstreamEvent(ERROR, detail=f"upstream connect failed: {e}"))
            return False

        if self._closing or self._closed:
            # close() raced the connect; do not leak the socket we just opened
            await self._close_transport()
            return False

        if not await self._send(config.to_session_update(initial_instructions)):
            await self._emit(UpstreamEvent(ERROR, detail="upstream handshake failed"))
            await self._close_transport()
            return False

        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"✅ [UPSTREAM] Realtime session open for {self.session_label} ({config.audio_format})")
        return True

    async def _send(self, message: Dict[str, Any]) -> bool:
        if self._ws is None or self._closed:
            return False
        try:
            await self._ws.send(json.dumps(message, ensure_ascii=False))
            return True
        except ConnectionClosed:
            logger.debug(f"[UPSTREAM] Send skipped, socket closed for {self.session_label}")
            return False
        except Exception as e:
            logger.warning(f"⚠️ [UPSTREAM] Send failed for {self.session_label}: {e}")
            return False

    async def append_input_audio(self, base64_chunk: str) -> bool:
        """Best-effort forward of one inbound chunk; skipped when not open."""
        if not self.is_open:
            return False
        return await self._send({"type": "input_audio_buffer.append", "audio": base64_chunk})

    async def request_response(self) -> bool:
        if not self.is_open:
            return False
        modalities = list(self.config.modalities) if self.config else ["text", "audio"]
        return await self._send({"type": "response.create", "response": {"modalities": modalities}})

    async def truncate_current_output(self, item_id: str) -> bool:
        if not self.is_open or not item_id:
            return False
        return await self._send(
            {
                "type": "conversation.item.truncate",
                "item_id": item_id,
                "content_index": 0,
                "audio_end_ms": 0,
            }
        )

    async def update_instructions(self, new_instructions: str) -> bool:
        """Instructions-only ``session.update``; audio format and voice stay."""
        if not self.is_open:
            return False
        return await self._send({"type": "session.update", "session": {"instructions": new_instructions}})

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._ws.recv()
                try:
                    event = json.loads(raw)
                except (json.JSONDecodeError, TypeError):
                    logger.warning(f"⚠️ [UPSTREAM] Non-JSON event for {self.session_label}")
                    continue
                if not isinstance(event, dict):
                    continue
                normalized = normalize_upstream_event(event)
                if normalized is not None:
                    await self._emit(normalized)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            if not self._closing:
                logger.warning(f"🔌 [UPSTREAM] Realtime socket closed unexpectedly for {self.session_label}: {e}")
                self._closed = True
                await self._emit(UpstreamEvent(CLOSED, detail=str(e)))
        except Exception as e:
            if not self._closing:
                logger.error(f"❌ [UPSTREAM] Reader failed for {self.session_label}: {e}")
                logger.error(traceback.format_exc())
                self._closed = True
                await self._emit(UpstreamEvent(ERROR, detail=str(e)))
                await self._emit(UpstreamEvent(CLOSED, detail=str(e)))

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[UPSTREAM] Ignoring close error for {self.session_label}: {e}")

    async def close(self) -> None:
        """Idempotent; safe to call from inside an event handler."""
        if self._closing:
            return
        self._closing = True

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_transport()
        self._closed = True
        self._handlers.clear()
        logger.info(f"✅ [UPSTREAM] Realtime session closed for {self.session_label}")

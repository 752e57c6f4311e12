import asyncio
import traceback
import uuid
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from codec import (
    AudioChunk,
    ControlEvent,
    ParseError,
    SessionKind,
    decode_downstream_frame,
    encode_clear_signal,
    encode_error,
    encode_session_started,
    encode_transcript,
    encode_upstream_audio_for_downstream,
)
from knowledge import KnowledgeBase, knowledge_base
from prompts import format_analysis_context, select_instructions
from realtime import (
    AUDIO_DELTA,
    CLOSED,
    ERROR,
    INPUT_TRANSCRIPT_DONE,
    OUTPUT_ITEM_STARTED,
    OUTPUT_TRANSCRIPT_DONE,
    TURN_STARTED,
    RealtimeSessionClient,
    UpstreamEvent,
    config_for,
)
from services.call_store import CallContext, CallStore, call_store
from telephony import TelephonyService, telephony_service
from termination import DEFAULT_POLICY, EndCallTimer, TerminationPolicy
from utils import logger

# 25 Twilio frames of 20 ms each, about half a second of caller audio
PRE_OPEN_BUFFER_FRAMES = 25
# Pause between the telephony handshake and the assistant's opening line
RESPONSE_SETTLE_SEC = 0.5


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_UPSTREAM = "awaiting_upstream"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


UpstreamFactory = Callable[[str], RealtimeSessionClient]


def _default_upstream_factory(label: str) -> RealtimeSessionClient:
    return RealtimeSessionClient(label)


class RelaySession:
    """One downstream connection paired with at most one upstream speech session.

    Both sides are event sources. Handlers check ``state`` first so that an
    event arriving after the session started closing is dropped instead of
    touching a released resource.
    """

    def __init__(
        self,
        downstream: WebSocket,
        session_kind: SessionKind,
        telephony: TelephonyService,
        store: CallStore,
        knowledge: KnowledgeBase,
        upstream_factory: UpstreamFactory = _default_upstream_factory,
        policy: TerminationPolicy = DEFAULT_POLICY,
        scenario: Optional[str] = None,
        customer_name: Optional[str] = None,
        buffer_frames: int = PRE_OPEN_BUFFER_FRAMES,
        response_delay_sec: float = RESPONSE_SETTLE_SEC,
        on_closed: Optional[Callable[["RelaySession"], None]] = None,
    ):
        self.session_id = f"{session_kind.value}_{uuid.uuid4().hex[:8]}"
        self.downstream = downstream
        self.kind = session_kind
        self.telephony = telephony
        self.store = store
        self.knowledge = knowledge
        self.upstream_factory = upstream_factory
        self.policy = policy
        self.scenario = scenario
        self.customer_name = customer_name
        self.response_delay_sec = response_delay_sec
        self._on_closed = on_closed

        self.state = SessionState.IDLE
        self.upstream: Optional[RealtimeSessionClient] = None
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.call_context: Optional[CallContext] = None
        self.analysis_contexts: List[Dict[str, Any]] = []
        self.last_user_transcript = ""
        self.last_assistant_item_id: Optional[str] = None
        self.assistant_speaking = False

        self.pending_audio: Deque[str] = deque(maxlen=buffer_frames)
        self.dropped_frames = 0
        self.timer = EndCallTimer(self.session_id, policy.delay_sec)
        self._open_task: Optional[asyncio.Task] = None
        self._downstream_closed = False

    # ------------------------------------------------------------------
    # Downstream
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Pump downstream messages until either side ends the session."""
        try:
            while self.state not in (SessionState.CLOSING, SessionState.CLOSED):
                message = await self.downstream.receive()
                if message.get("type") == "websocket.disconnect":
                    self._downstream_closed = True
                    logger.info(f"[RELAY] Downstream disconnected for {self.session_id}")
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await self.handle_downstream_message(raw)
        except WebSocketDisconnect:
            self._downstream_closed = True
            logger.info(f"[RELAY] Downstream disconnected for {self.session_id}")
        except RuntimeError as re:
            # Starlette raises once a disconnect message has been received
            if "disconnect" not in str(re):
                raise
            self._downstream_closed = True
        finally:
            await self.close("downstream ended")

    async def handle_downstream_message(self, raw) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return

        frame = decode_downstream_frame(self.kind, raw)
        if isinstance(frame, ParseError):
            logger.warning(f"⚠️ [RELAY] Dropping frame for {self.session_id}: {frame.reason}")
            return

        if isinstance(frame, AudioChunk):
            await self._handle_audio(frame.payload)
            return

        if frame.name == "start":
            await self._handle_start(frame)
        elif frame.name == "update_context":
            await self.update_context(frame.analysis_contexts)
        elif frame.name == "stop":
            logger.info(f"[RELAY] Stop received for {self.session_id}")
            await self.close("downstream stop")
        else:
            logger.debug(f"[RELAY] Ignoring {frame.raw_event} event for {self.session_id}")

    async def _handle_audio(self, payload: str) -> None:
        if self.state is SessionState.ACTIVE:
            await self.upstream.append_input_audio(payload)
        elif self.state is SessionState.AWAITING_UPSTREAM:
            if len(self.pending_audio) == self.pending_audio.maxlen:
                self.dropped_frames += 1
            self.pending_audio.append(payload)
        else:
            logger.debug(f"[RELAY] Audio before start dropped for {self.session_id}")

    async def _handle_start(self, frame: ControlEvent) -> None:
        if self.state is not SessionState.IDLE:
            logger.warning(f"⚠️ [RELAY] Duplicate start ignored for {self.session_id}")
            return

        self.stream_sid = frame.stream_sid
        self.call_sid = frame.call_sid
        if frame.analysis_contexts:
            self.analysis_contexts = frame.analysis_contexts
        logger.info(
            f"🎯 [RELAY] Start for {self.session_id}"
            + (f" (call {self.call_sid}, stream {self.stream_sid})" if self.kind is SessionKind.TELEPHONY else "")
        )
        self.state = SessionState.AWAITING_UPSTREAM
        self._open_task = asyncio.create_task(self._open_upstream())

    async def update_context(self, contexts: Optional[List[Dict[str, Any]]]) -> None:
        """Replace document context; pushes new instructions when already active."""
        if contexts is None:
            return
        self.analysis_contexts = contexts
        logger.info(f"📋 [RELAY] Analysis context updated for {self.session_id}: {len(contexts)} file(s)")
        if self.state is SessionState.ACTIVE and self.upstream is not None:
            await self.upstream.update_instructions(self.compose_instructions())

    # ------------------------------------------------------------------
    # Upstream
    # ------------------------------------------------------------------

    async def _load_call_context(self) -> CallContext:
        stored = None
        if self.call_sid:
            stored = await self.store.get_context(self.call_sid)
        if stored is None:
            stored = CallContext()
        return CallContext(
            customer_name=self.customer_name or stored.customer_name,
            purpose=self.scenario or stored.purpose,
            policy_expiry=stored.policy_expiry,
            created_at=stored.created_at,
        )

    def compose_instructions(self) -> str:
        if self.kind is SessionKind.TELEPHONY:
            context = self.call_context or CallContext()
            return select_instructions(self.kind, scenario=context.purpose or None, call_context=context)

        document_context = format_analysis_context(self.analysis_contexts)
        query = "\n".join(str(ctx.get("analysis", "")) for ctx in self.analysis_contexts) or self.last_user_transcript
        retrieved_context = ""
        if query and self.knowledge.enabled:
            retrieved_context = self.knowledge.lookup_context(query)
        return select_instructions(
            self.kind,
            retrieved_context=retrieved_context,
            document_context=document_context,
        )

    async def _open_upstream(self) -> None:
        try:
            if self.kind is SessionKind.TELEPHONY:
                self.call_context = await self._load_call_context()

            client = self.upstream_factory(self.session_id)
            client.on_event(self.handle_upstream_event)
            self.upstream = client

            opened = await client.open(config_for(self.kind), self.compose_instructions())
            if self.state is not SessionState.AWAITING_UPSTREAM:
                return
            if not opened:
                await self.close("upstream connect failed")
                return

            await self._flush_pending_audio()
            if self.state is not SessionState.AWAITING_UPSTREAM:
                return
            self.state = SessionState.ACTIVE

            if self.kind is SessionKind.TELEPHONY:
                # The callee picked up; the assistant opens the conversation
                await asyncio.sleep(self.response_delay_sec)
                if self.state is SessionState.ACTIVE:
                    await client.request_response()
            else:
                await self._send_downstream(encode_session_started())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ [RELAY] Failed to open upstream for {self.session_id}: {e}")
            logger.error(traceback.format_exc())
            await self.close("upstream open error")

    async def _flush_pending_audio(self) -> None:
        if not self.pending_audio:
            return
        logger.info(
            f"🔍 [RELAY] Flushing {len(self.pending_audio)} buffered frames for {self.session_id}"
            + (f" ({self.dropped_frames} dropped)" if self.dropped_frames else "")
        )
        # Still AWAITING_UPSTREAM here, so frames arriving mid-flush queue behind the buffer
        while self.pending_audio and self.state is SessionState.AWAITING_UPSTREAM:
            await self.upstream.append_input_audio(self.pending_audio.popleft())

    async def _wait_for_upstream(self) -> None:
        """Wait for the in-flight upstream open, if any."""
        task = self._open_task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def handle_upstream_event(self, event: UpstreamEvent) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return

        if event.kind == AUDIO_DELTA:
            frame = encode_upstream_audio_for_downstream(self.kind, event.audio, self.stream_sid)
            if frame is None:
                logger.debug(f"[RELAY] No stream id yet, audio delta dropped for {self.session_id}")
                return
            self.assistant_speaking = True
            await self._send_downstream(frame)

        elif event.kind == OUTPUT_ITEM_STARTED:
            self.last_assistant_item_id = event.item_id

        elif event.kind == TURN_STARTED:
            await self._barge_in()

        elif event.kind == OUTPUT_TRANSCRIPT_DONE:
            await self._on_assistant_transcript(event.text or "")

        elif event.kind == INPUT_TRANSCRIPT_DONE:
            await self._on_user_transcript(event.text or "")

        elif event.kind == ERROR:
            logger.error(f"❌ [RELAY] Upstream error for {self.session_id}: {event.detail}")
            if self.kind is SessionKind.APP:
                await self._send_downstream(encode_error(event.detail or "upstream error"))

        elif event.kind == CLOSED:
            await self.close("upstream closed")

    async def _barge_in(self) -> None:
        logger.info(f"🎤 [RELAY] Caller started speaking on {self.session_id} – barge-in")
        item_id = self.last_assistant_item_id
        if item_id and self.upstream is not None:
            if not await self.upstream.truncate_current_output(item_id):
                logger.debug(f"[RELAY] Truncate skipped for {self.session_id}")
        clear = encode_clear_signal(self.kind, self.stream_sid)
        if clear is not None:
            await self._send_downstream(clear)
        self.assistant_speaking = False

    async def _on_assistant_transcript(self, text: str) -> None:
        logger.info(f"🤖 [RELAY] Assistant turn done on {self.session_id} ({len(text)} chars)")
        logger.debug(f"[RELAY] Assistant said: {text}")
        self.assistant_speaking = False

        if self.kind is SessionKind.APP:
            await self._send_downstream(encode_transcript(text, "assistant"))
            return

        if self.policy.is_closing_phrase(text):
            logger.info(f"⏱️ [HANGUP] Closing phrase detected on {self.session_id}")
            self.timer.arm(self._end_call)

    async def _on_user_transcript(self, text: str) -> None:
        logger.info(f"👤 [RELAY] User turn done on {self.session_id} ({len(text)} chars)")
        logger.debug(f"[RELAY] User said: {text}")

        if self.kind is SessionKind.APP:
            self.last_user_transcript = text
            await self._send_downstream(encode_transcript(text, "user"))
            return

        if self.policy.is_automated_system_utterance(text):
            if self.timer.pending:
                logger.info(f"🤖 [HANGUP] Automated response on {self.session_id} – timer kept")
            return
        if self.timer.cancel():
            logger.info(f"🔄 [HANGUP] Caller replied on {self.session_id} – end-call timer cancelled")

    async def _end_call(self) -> None:
        try:
            await self.telephony.end_call(self.call_sid)
        finally:
            await self.close("end-call timer fired")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _send_downstream(self, frame: str) -> bool:
        if self._downstream_closed or self.state is SessionState.CLOSED:
            return False
        try:
            await self.downstream.send_text(frame)
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"[RELAY] Downstream send failed for {self.session_id}: {e}")
            self._downstream_closed = True
            return False

    async def _close_downstream(self) -> None:
        if self._downstream_closed:
            return
        self._downstream_closed = True
        if (
            self.downstream.application_state == WebSocketState.DISCONNECTED
            or self.downstream.client_state == WebSocketState.DISCONNECTED
        ):
            return
        await self.downstream.close(code=1000)

    async def close(self, reason: str = "") -> None:
        """Release the timer, the upstream and the downstream. Idempotent."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        logger.info(f"🔍 [RELAY] Closing {self.session_id}: {reason}")

        try:
            self.timer.cancel()
        except Exception as e:
            logger.error(f"❌ [RELAY] Timer cancel failed for {self.session_id}: {e}")

        task, self._open_task = self._open_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"❌ [RELAY] Upstream open task failed for {self.session_id}: {e}")

        if self.upstream is not None:
            try:
                await self.upstream.close()
            except Exception as e:
                logger.error(f"❌ [RELAY] Upstream close failed for {self.session_id}: {e}")

        try:
            await self._close_downstream()
        except Exception as e:
            logger.debug(f"[RELAY] Downstream close failed for {self.session_id}: {e}")

        self.pending_audio.clear()
        self.state = SessionState.CLOSED
        logger.info(f"✅ [RELAY] Session {self.session_id} closed")

        if self._on_closed is not None:
            self._on_closed(self)


class RelayService:
    """Creates relay sessions for accepted WebSockets and tracks the live ones."""

    def __init__(
        self,
        telephony: TelephonyService,
        store: CallStore,
        knowledge: KnowledgeBase,
        upstream_factory: UpstreamFactory = _default_upstream_factory,
        policy: TerminationPolicy = DEFAULT_POLICY,
    ):
        self.telephony = telephony
        self.store = store
        self.knowledge = knowledge
        self.upstream_factory = upstream_factory
        self.policy = policy
        self.active_sessions: Dict[str, RelaySession] = {}
        logger.info("RelayService initialized")

    def create_session(
        self,
        websocket: WebSocket,
        session_kind: SessionKind,
        scenario: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> RelaySession:
        session = RelaySession(
            websocket,
            session_kind,
            telephony=self.telephony,
            store=self.store,
            knowledge=self.knowledge,
            upstream_factory=self.upstream_factory,
            policy=self.policy,
            scenario=scenario,
            customer_name=customer_name,
            on_closed=self._forget,
        )
        self.active_sessions[session.session_id] = session
        return session

    def _forget(self, session: RelaySession) -> None:
        self.active_sessions.pop(session.session_id, None)

    async def handle_stream(
        self,
        websocket: WebSocket,
        session_kind: SessionKind,
        scenario: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> None:
        await websocket.accept()
        session = self.create_session(websocket, session_kind, scenario, customer_name)
        logger.info(f"✅ [RELAY] {session_kind.value} connection accepted: {session.session_id}")
        try:
            await session.run()
        except Exception as e:
            logger.error(f"❌ [RELAY] Session {session.session_id} failed: {e}")
            logger.error(traceback.format_exc())
        finally:
            await session.close("handler exit")
            self._forget(session)

    def metrics(self) -> Dict[str, Any]:
        by_kind = {kind.value: 0 for kind in SessionKind}
        for session in self.active_sessions.values():
            by_kind[session.kind.value] += 1
        return {"active_sessions": len(self.active_sessions), "by_kind": by_kind}

    async def close_all(self) -> None:
        for session in list(self.active_sessions.values()):
            await session.close("server shutdown")


# Create singleton instance
relay_service = RelayService(telephony_service, call_store, knowledge_base)

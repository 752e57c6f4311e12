import asyncio
import json
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Configure the environment before any application module is imported
os.environ.setdefault("AWS_XRAY_SDK_ENABLED", "false")
os.environ.setdefault("AWS_XRAY_CONTEXT_MISSING", "LOG_ERROR")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("SERVER_DOMAIN", "relay.example.com")
os.environ.setdefault("RAG_CHUNKS_PATH", "/nonexistent/rag_chunks.json")
os.environ.pop("REDIS_URL", None)
os.environ.pop("ENV_VARS_ARN", None)

from starlette.websockets import WebSocketState  # noqa: E402

from codec import SessionKind  # noqa: E402
from knowledge import KnowledgeBase  # noqa: E402
from realtime import ERROR, UpstreamEvent  # noqa: E402
from relay import RelaySession  # noqa: E402
from services.call_store import CallStore  # noqa: E402
from telephony import TelephonyService  # noqa: E402
from termination import TerminationPolicy  # noqa: E402


class FakeDownstream:
    """Stands in for a starlette WebSocket on the downstream side."""

    def __init__(self):
        self.sent = []
        self.close_calls = 0
        self.accepted = False
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_text(self, data: str):
        if self.application_state == WebSocketState.DISCONNECTED:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason=None):
        if self.application_state == WebSocketState.DISCONNECTED:
            raise RuntimeError("WebSocket already closed")
        self.close_calls += 1
        self.application_state = WebSocketState.DISCONNECTED
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self):
        return await self.incoming.get()

    def push(self, message: dict):
        self.incoming.put_nowait({"type": "websocket.receive", "text": json.dumps(message)})

    def peer_disconnect(self):
        self.client_state = WebSocketState.DISCONNECTED
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def sent_of_type(self, key: str, value: str):
        return [m for m in self.sent if m.get(key) == value]


class FakeUpstream:
    """Records every call the relay makes on its upstream speech session."""

    def __init__(self, label: str, open_result: bool = True):
        self.label = label
        self.open_result = open_result
        self.handlers = []
        self.open_calls = []
        self.appended = []
        self.truncated = []
        self.instruction_updates = []
        self.responses_requested = 0
        self.close_calls = 0

    def on_event(self, handler):
        self.handlers.append(handler)

    async def open(self, config, initial_instructions):
        self.open_calls.append((config, initial_instructions))
        if not self.open_result:
            await self.emit(UpstreamEvent(ERROR, detail="upstream connect failed: refused"))
            return False
        return True

    async def append_input_audio(self, base64_chunk):
        self.appended.append(base64_chunk)
        return True

    async def request_response(self):
        self.responses_requested += 1
        return True

    async def truncate_current_output(self, item_id):
        self.truncated.append(item_id)
        return True

    async def update_instructions(self, new_instructions):
        self.instruction_updates.append(new_instructions)
        return True

    async def close(self):
        self.close_calls += 1

    async def emit(self, event: UpstreamEvent):
        for handler in list(self.handlers):
            await handler(event)


class FakeUpstreamFactory:
    def __init__(self, open_result: bool = True):
        self.open_result = open_result
        self.created = []

    def __call__(self, label: str) -> FakeUpstream:
        client = FakeUpstream(label, self.open_result)
        self.created.append(client)
        return client


@pytest.fixture
def downstream():
    return FakeDownstream()


@pytest.fixture
def upstream_factory():
    return FakeUpstreamFactory()


@pytest.fixture
def store():
    return CallStore(redis_url=None, ttl=60)


@pytest.fixture
def telephony():
    fake = MagicMock(spec=TelephonyService)
    fake.end_call = AsyncMock(return_value=True)
    return fake


@pytest.fixture
def short_policy():
    return TerminationPolicy(delay_sec=0.05)


@pytest.fixture
def make_session(upstream_factory, telephony, store):
    def _make(kind: SessionKind, downstream=None, knowledge=None, **kwargs):
        kwargs.setdefault("response_delay_sec", 0)
        return RelaySession(
            downstream or FakeDownstream(),
            kind,
            telephony=telephony,
            store=store,
            knowledge=knowledge or KnowledgeBase(),
            upstream_factory=upstream_factory,
            **kwargs,
        )

    return _make


async def start_telephony(session, stream_sid="S1", call_sid="C1"):
    await session.handle_downstream_message(
        json.dumps({"event": "start", "start": {"streamSid": stream_sid, "callSid": call_sid}})
    )
    await session._wait_for_upstream()


async def start_app(session, **extra):
    await session.handle_downstream_message(json.dumps({"type": "start_app", **extra}))
    await session._wait_for_upstream()

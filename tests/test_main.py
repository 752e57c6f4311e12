from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from twilio.base.exceptions import TwilioRestException

from conftest import FakeUpstreamFactory
from knowledge import knowledge_base
from main import app
from relay import relay_service
from services.analysis import analysis_service
from services.call_store import CallStatus, call_store
from telephony import telephony_service


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def fake_upstreams(monkeypatch):
    factory = FakeUpstreamFactory()
    monkeypatch.setattr(relay_service, "upstream_factory", factory)
    return factory


class TestServiceInfo:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["rag"]["enabled"] is False
        assert "/media-stream" in data["endpoints"]["websockets"]

    def test_websocket_metrics(self, client):
        assert client.get("/websocket-metrics").json() == {
            "active_sessions": 0,
            "by_kind": {"telephony": 0, "app": 0},
        }


class TestCallRoutes:
    def test_start_call(self, client, monkeypatch):
        initiate = AsyncMock(return_value="CA123")
        monkeypatch.setattr(telephony_service, "initiate_call", initiate)

        response = client.post("/api/call", json={"phoneNumber": "+821012345678", "customerName": "김철수"})

        assert response.json() == {"success": True, "callSid": "CA123"}
        initiate.assert_awaited_once_with("+821012345678", customer_name="김철수", purpose=None)

    def test_start_call_without_number(self, client):
        assert client.post("/api/call", json={}).json() == {"success": False, "error": "전화번호가 없습니다."}

    def test_start_call_twilio_failure(self, client, monkeypatch):
        monkeypatch.setattr(
            telephony_service,
            "initiate_call",
            AsyncMock(side_effect=TwilioRestException(400, "/Calls", "invalid number")),
        )
        data = client.post("/api/call", json={"phoneNumber": "bogus"}).json()
        assert data["success"] is False
        assert "invalid number" in data["error"]

    def test_call_status_unknown(self, client):
        assert client.get("/api/call-status/CA404").json() == {"success": True, "status": {"status": "unknown"}}

    def test_call_status_known(self, client, monkeypatch):
        status = CallStatus(status="ringing", phone_number="+821012345678", customer_name="김철수", start_time=1.0)
        monkeypatch.setattr(call_store, "get_status", AsyncMock(return_value=status))
        assert client.get("/api/call-status/CA1").json() == {
            "success": True,
            "status": {
                "status": "ringing",
                "phoneNumber": "+821012345678",
                "customerName": "김철수",
                "startTime": 1.0,
            },
        }

    def test_status_callback(self, client, monkeypatch):
        handler = AsyncMock()
        monkeypatch.setattr(telephony_service, "handle_status_callback", handler)
        response = client.post("/call-status", data={"CallSid": "CA1", "CallStatus": "completed"})
        assert response.status_code == 200
        handler.assert_awaited_once_with("CA1", "completed")

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_incoming_call_twiml(self, client, method):
        response = getattr(client, method)("/incoming-call", params={"purpose": "상담예약", "customerName": "김철수"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "wss://relay.example.com/media-stream?purpose=" in response.text
        assert "&amp;customerName=" in response.text


class TestAnalysisRoutes:
    def test_chat(self, client, monkeypatch):
        chat = AsyncMock(return_value="연봉의 두 배를 권장합니다.")
        monkeypatch.setattr(analysis_service, "chat", chat)
        response = client.post("/api/chat", json={"message": "암보험 얼마?", "context": [{"role": "user", "content": "안녕"}]})
        assert response.json() == {"success": True, "response": "연봉의 두 배를 권장합니다."}
        chat.assert_awaited_once_with("암보험 얼마?", [{"role": "user", "content": "안녕"}])

    def test_chat_failure_envelope(self, client, monkeypatch):
        monkeypatch.setattr(analysis_service, "chat", AsyncMock(side_effect=RuntimeError("quota")))
        assert client.post("/api/chat", json={"message": "hi"}).json() == {"success": False, "error": "quota"}

    def test_analyze_file(self, client, monkeypatch):
        result = {"analysis": "사망보험금 1억", "fileName": "증권.pdf", "textLength": 5}
        monkeypatch.setattr(analysis_service, "analyze_file", AsyncMock(return_value=result))
        data = client.post("/api/analyze-file", json={"file": "JVBERi0=", "fileName": "증권.pdf"}).json()
        assert data == {"success": True, **result}

    def test_analyze_image_requires_image(self, client):
        assert client.post("/api/analyze-image", json={}).json()["success"] is False

    def test_analyze_image(self, client, monkeypatch):
        monkeypatch.setattr(analysis_service, "analyze_image", AsyncMock(return_value="실손 미가입"))
        data = client.post("/api/analyze-image", json={"image": "data:image/png;base64,iVBOR"}).json()
        assert data == {"success": True, "analysis": "실손 미가입"}

    def test_rag_search(self, client, monkeypatch):
        monkeypatch.setattr(knowledge_base, "chunks", [{"book": "금융집짓기", "content": "실손 보험은 필수다."}])
        data = client.post("/api/rag-search", json={"query": "실손"}).json()
        assert data["success"] is True
        assert data["results"][0]["book"] == "금융집짓기"
        assert data["context"].startswith("[참고자료 1] 출처: 금융집짓기")


class TestAppStream:
    @pytest.mark.parametrize("path", ["/app-stream", "/"])
    def test_session_lifecycle(self, client, fake_upstreams, path):
        with client.websocket_connect(path) as ws:
            ws.send_json({"type": "start_app"})
            assert ws.receive_json() == {"type": "session_started"}

            ws.send_json({"type": "audio", "data": "AAAA"})
            ws.send_json({"type": "stop"})
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

        upstream = fake_upstreams.created[0]
        assert upstream.appended == ["AAAA"]
        assert upstream.close_calls == 1
        assert relay_service.active_sessions == {}

import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from aws_xray_sdk.core import patch_all
from fastapi import FastAPI, Request, Response, WebSocket
from twilio.base.exceptions import TwilioException

from codec import SessionKind
from knowledge import knowledge_base
from relay import relay_service
from services.analysis import analysis_service
from services.call_store import call_store
from telephony import TelephonyNotConfigured, telephony_service
from utils import logger, sanitize_headers

patch_all()  # instrument std libs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info("Starting Genie voice relay service")

    openai_api_key = os.getenv("OPENAI_API_KEY")
    logger.info(f"OPENAI_API_KEY found: {bool(openai_api_key)}")
    logger.info(f"TWILIO credentials found: {bool(telephony_service.account_sid and telephony_service.auth_token)}")
    logger.info(f"REDIS_URL configured: {bool(call_store.redis_url)}")
    if not openai_api_key:
        logger.error("OPENAI_API_KEY is missing. Realtime sessions and analysis will not work.")

    knowledge_base.load()

    yield

    logger.info("Shutting down Genie voice relay service")
    try:
        await relay_service.close_all()
        logger.info("✅ Relay sessions closed")
    except Exception as e:
        logger.warning(f"⚠️ Error during relay session cleanup: {e}")
    try:
        await call_store.close()
    except Exception as e:
        logger.warning(f"⚠️ Error during call store cleanup: {e}")


app = FastAPI(title="Genie Voice Relay", lifespan=lifespan)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ----- Service info -----

@app.get("/")
async def root():
    """Health check endpoint with knowledge base and endpoint summary."""
    return {
        "status": "healthy",
        "service": "Genie Voice Relay",
        "rag": {
            "enabled": knowledge_base.enabled,
            "chunks": len(knowledge_base.chunks),
            "books": knowledge_base.books,
        },
        "endpoints": {
            "calls": ["/api/call", "/api/call-status/{call_sid}", "/call-status", "/incoming-call"],
            "analysis": ["/api/chat", "/api/analyze-file", "/api/analyze-image", "/api/rag-search"],
            "websockets": ["/media-stream", "/app-stream"],
        },
    }


@app.get("/websocket-metrics")
async def websocket_metrics():
    """Return metrics about live relay sessions."""
    return relay_service.metrics()


# ----- Calls -----

@app.post("/api/call")
async def start_call(request: Request):
    body = await _json_body(request)
    phone_number = body.get("phoneNumber")
    if not phone_number:
        return {"success": False, "error": "전화번호가 없습니다."}
    try:
        call_sid = await telephony_service.initiate_call(
            phone_number,
            customer_name=body.get("customerName") or "",
            purpose=body.get("purpose"),
        )
    except (TwilioException, TelephonyNotConfigured, OSError) as e:
        logger.error(f"❌ [TELEPHONY] Outbound call failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, "callSid": call_sid}


@app.get("/api/call-status/{call_sid}")
async def get_call_status(call_sid: str):
    status = await call_store.get_status(call_sid)
    if status is None:
        return {"success": True, "status": {"status": "unknown"}}
    return {
        "success": True,
        "status": {
            "status": status.status,
            "phoneNumber": status.phone_number,
            "customerName": status.customer_name,
            "startTime": status.start_time,
        },
    }


@app.post("/call-status")
async def call_status_callback(request: Request):
    """Twilio status callback; only updates calls we placed."""
    form = await request.form()
    await telephony_service.handle_status_callback(form.get("CallSid"), form.get("CallStatus"))
    return Response(status_code=200)


@app.api_route("/incoming-call", methods=["GET", "POST"])
async def incoming_call(request: Request):
    """Answer URL for outbound calls: connect the call to the media stream."""
    logger.debug(f"🔍 Incoming-call headers: {sanitize_headers(dict(request.headers))}")
    twiml = telephony_service.build_incoming_call_twiml(
        request.query_params.get("purpose"),
        request.query_params.get("customerName"),
    )
    return Response(content=twiml, media_type="application/xml")


# ----- Analysis -----

@app.post("/api/chat")
async def chat(request: Request):
    body = await _json_body(request)
    message = body.get("message")
    if not message:
        return {"success": False, "error": "메시지가 없습니다."}
    try:
        reply = await analysis_service.chat(message, body.get("context") or [])
    except Exception as e:
        logger.error(f"❌ [ANALYSIS] Chat failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, "response": reply}


@app.post("/api/analyze-file")
async def analyze_file(request: Request):
    body = await _json_body(request)
    file_data = body.get("file")
    if not file_data:
        return {"success": False, "error": "파일이 없습니다."}
    try:
        result = await analysis_service.analyze_file(
            file_data,
            file_name=body.get("fileName"),
            file_type=body.get("fileType"),
            prompt=body.get("prompt"),
        )
    except Exception as e:
        logger.error(f"❌ [ANALYSIS] File analysis failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, **result}


@app.post("/api/analyze-image")
async def analyze_image(request: Request):
    body = await _json_body(request)
    image = body.get("image")
    if not image:
        return {"success": False, "error": "이미지가 없습니다."}
    try:
        analysis = await analysis_service.analyze_image(image, body.get("prompt"))
    except Exception as e:
        logger.error(f"❌ [ANALYSIS] Image analysis failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, "analysis": analysis}


@app.post("/api/rag-search")
async def rag_search(request: Request):
    body = await _json_body(request)
    query = body.get("query")
    if not query:
        return {"success": False, "error": "검색어가 없습니다."}
    return {"success": True, **analysis_service.rag_search(query)}


# ----- Media streams -----

@app.websocket("/media-stream")
async def media_stream_endpoint(websocket: WebSocket, purpose: Optional[str] = None, customerName: Optional[str] = None):
    """Twilio Media Streams leg of an outbound call."""
    logger.info(f"📞 [TELEPHONY] Media stream connecting (purpose={purpose!r})")
    await relay_service.handle_stream(
        websocket, SessionKind.TELEPHONY, scenario=purpose, customer_name=customerName
    )


@app.websocket("/app-stream")
async def app_stream_endpoint(websocket: WebSocket):
    """Mobile app voice session."""
    await relay_service.handle_stream(websocket, SessionKind.APP)


@app.websocket("/")
async def app_stream_root(websocket: WebSocket):
    """The app connects to the server root; same handler as ``/app-stream``."""
    await relay_service.handle_stream(websocket, SessionKind.APP)


# For direct execution
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    logger.info(f"PORT environment variable: {os.environ.get('PORT')}")

    # Disable reload in production, enable it only in development
    reload_mode = os.environ.get("ENV", "production").lower() == "development"

    logger.info(f"Starting server on port {port}")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=reload_mode,
    )

import asyncio
import os
from typing import Optional
from urllib.parse import urlencode

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from services.call_store import (
    TERMINAL_STATUSES,
    CallContext,
    CallStatus,
    CallStore,
    CallStoreError,
    call_store,
)
from utils import logger, render_stream_twiml

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_NUMBER = os.getenv("TWILIO_NUMBER")
SERVER_DOMAIN = os.getenv("SERVER_DOMAIN", "localhost:8080")
DEFAULT_PURPOSE = "상담예약"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TelephonyNotConfigured(RuntimeError):
    """Raised when an outbound call is requested without Twilio credentials."""


class TelephonyService:
    """Twilio REST collaborator: places calls, hangs them up, tracks status.

    The Twilio SDK is blocking, so every REST call runs in the default
    executor to keep the event loop free for media streams.
    """

    def __init__(
        self,
        store: CallStore,
        account_sid: Optional[str] = TWILIO_ACCOUNT_SID,
        auth_token: Optional[str] = TWILIO_AUTH_TOKEN,
        from_number: Optional[str] = TWILIO_NUMBER,
        server_domain: str = SERVER_DOMAIN,
        client: Optional[Client] = None,
    ):
        self.store = store
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.server_domain = server_domain
        self._client = client

        if not (account_sid and auth_token):
            logger.warning("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set – outbound calls disabled")

    @property
    def client(self) -> Client:
        if self._client is None:
            if not (self.account_sid and self.auth_token):
                raise TelephonyNotConfigured("Twilio credentials are not configured")
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def answer_url(self, purpose: str, customer_name: str) -> str:
        query = urlencode({"purpose": purpose, "customerName": customer_name})
        return f"https://{self.server_domain}/incoming-call?{query}"

    def stream_url(self, purpose: str, customer_name: str) -> str:
        query = urlencode({"purpose": purpose, "customerName": customer_name})
        return f"wss://{self.server_domain}/media-stream?{query}"

    def build_incoming_call_twiml(self, purpose: Optional[str], customer_name: Optional[str]) -> str:
        """TwiML that connects the answered call to our media-stream WebSocket."""
        purpose = purpose or DEFAULT_PURPOSE
        customer_name = customer_name or ""
        logger.info(f"📞 [TELEPHONY] Answering call for purpose '{purpose}'")
        return render_stream_twiml(self.stream_url(purpose, customer_name))

    async def initiate_call(
        self, phone_number: str, customer_name: str = "", purpose: Optional[str] = None
    ) -> str:
        """Originate an outbound call and record its status and context.

        Returns the new call SID. Twilio errors propagate to the caller.
        """
        purpose = purpose or DEFAULT_PURPOSE
        client = self.client

        def _create():
            return client.calls.create(
                url=self.answer_url(purpose, customer_name),
                to=phone_number,
                from_=self.from_number,
                status_callback=f"https://{self.server_domain}/call-status",
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
            )

        logger.info(f"📞 [TELEPHONY] Placing outbound call to {phone_number}")
        call = await asyncio.get_running_loop().run_in_executor(None, _create)
        call_sid = call.sid
        logger.info(f"✅ [TELEPHONY] Outbound call created: {call_sid}")

        try:
            await self.store.set_status(
                call_sid,
                CallStatus(status="initiated", phone_number=phone_number, customer_name=customer_name, purpose=purpose),
            )
            await self.store.set_context(call_sid, CallContext(customer_name=customer_name, purpose=purpose))
        except CallStoreError as e:
            logger.warning(f"⚠️ [TELEPHONY] Call {call_sid} tracked in local memory only: {e}")
        return call_sid

    async def end_call(self, call_sid: Optional[str]) -> bool:
        """Ask Twilio to complete *call_sid*. Failures are logged, never raised."""
        if not call_sid:
            logger.warning("⚠️ [HANGUP] No call SID known – skipping provider hangup")
            return False
        try:
            client = self.client

            def _complete():
                return client.calls(call_sid).update(status="completed")

            await asyncio.get_running_loop().run_in_executor(None, _complete)
            logger.info(f"📞 [HANGUP] Call {call_sid} completed via Twilio")
            return True
        except (TwilioException, TelephonyNotConfigured, OSError) as e:
            logger.error(f"❌ [HANGUP] Failed to end call {call_sid}: {e}")
            return False

    async def handle_status_callback(self, call_sid: Optional[str], call_status: Optional[str]) -> None:
        """Apply a Twilio status callback to an already-tracked call."""
        if not call_sid or not call_status:
            return
        logger.info(f"📞 [TELEPHONY] Status update for {call_sid}: {call_status}")
        try:
            updated = await self.store.update_status(call_sid, call_status)
        except CallStoreError as e:
            logger.warning(f"⚠️ [STORE] Status for {call_sid} kept in local memory only: {e}")
            updated = True
        if updated and call_status in TERMINAL_STATUSES:
            self.store.schedule_call_cleanup(call_sid)


# Create singleton instance
telephony_service = TelephonyService(call_store)

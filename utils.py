import json
import logging
import os
import re
import sys
from typing import Any, Dict, Optional
from xml.sax.saxutils import quoteattr

import boto3

# Caller-identifying data, masked both in log output and in X-Ray traces
_REDACTIONS = (
    (re.compile(r"\b(?:CA|MZ)[a-fA-F0-9]{32}\b"), "[SID]"),
    (re.compile(r"(?:https?|wss?)://\S+"), "[URL]"),
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[EMAIL]"),
    (re.compile(r"\+?\d[\d\-. ]{7,}\d"), "[PHONE]"),
)

SENSITIVE_HEADERS = frozenset(
    {"authorization", "x-twilio-signature", "cookie", "set-cookie", "x-api-key", "api-key"}
)


def redact(text: str) -> str:
    for pattern, mask in _REDACTIONS:
        text = pattern.sub(mask, text)
    return text


def redact_value(value: Any) -> Any:
    """Recursively mask strings inside lists and dicts; other values pass through."""
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    if isinstance(value, dict):
        return {k: redact_value(v) for k, v in value.items()}
    return value


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_value(record.msg)
        if isinstance(record.args, dict):
            record.args = redact_value(record.args)
        elif record.args:
            record.args = tuple(redact_value(a) for a in record.args)
        return True


def setup_logging(app_name: str = "genie-relay") -> logging.Logger:
    """
    Configure the service logger.

    Level comes from LOG_LEVEL (INFO by default); DEBUG_SECRETS=1 forces DEBUG.
    Output goes to stdout through a redacting handler and does not propagate
    to the root logger.
    """
    log = logging.getLogger(app_name)
    if os.getenv("DEBUG_SECRETS") == "1":
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        handler.addFilter(RedactingFilter())
        log.addHandler(handler)
    log.propagate = False
    return log


logger = setup_logging()


def inject_secrets(secret_arn: Optional[str], client=None) -> int:
    """Copy keys of a JSON secret into ``os.environ``; returns how many were set.

    Keys already present in the environment win, so local overrides keep
    working. Failures are logged and the service starts with what it has.
    """
    if not secret_arn:
        return 0
    try:
        client = client or boto3.client(
            "secretsmanager",
            region_name=os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1",
        )
        payload = client.get_secret_value(SecretId=secret_arn).get("SecretString")
        values = json.loads(payload) if payload else None
    except json.JSONDecodeError:
        logger.error("❌ [SECRETS] Secret is not valid JSON – nothing injected")
        return 0
    except Exception as e:
        logger.error(f"❌ [SECRETS] Could not read application secret: {e}")
        return 0

    if not isinstance(values, dict):
        logger.error("❌ [SECRETS] Secret has no JSON object payload – nothing injected")
        return 0

    injected = 0
    for key, value in values.items():
        if key in os.environ:
            logger.debug(f"[SECRETS] Keeping existing {key}")
            continue
        os.environ[key] = str(value)
        injected += 1
    logger.info(f"🔐 [SECRETS] Injected {injected} settings from Secrets Manager")
    return injected


# Runs before any module reads its configuration with os.getenv
inject_secrets(os.getenv("ENV_VARS_ARN"))


TWIML_STREAM_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={websocket_url} />
    </Connect>
</Response>
"""


def render_stream_twiml(websocket_url: str) -> str:
    return TWIML_STREAM_TEMPLATE.format(websocket_url=quoteattr(websocket_url))


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of *headers* with credentials and signatures replaced by ``REDACTED``."""
    return {k: "REDACTED" if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()}


def install_xray_redaction() -> bool:
    """Swap in a UDP emitter that masks trace documents before they are sent."""
    from aws_xray_sdk.core import xray_recorder
    from aws_xray_sdk.core.emitters.udp_emitter import PROTOCOL_DELIMITER, PROTOCOL_HEADER, UDPEmitter

    class RedactingEmitter(UDPEmitter):
        def send_entity(self, entity):
            try:
                document = json.dumps(redact_value(entity.to_dict()), default=str, separators=(",", ":"))
            except Exception as e:
                logger.warning(f"[XRAY] Trace redaction failed, sending as-is: {e}")
                super().send_entity(entity)
                return
            self._send_data(f"{PROTOCOL_HEADER}{PROTOCOL_DELIMITER}{document}")

    try:
        xray_recorder.configure(emitter=RedactingEmitter())
    except Exception as e:
        logger.warning(f"[XRAY] Redacting emitter not installed: {e}")
        return False
    return True


install_xray_redaction()

"""
Inbound call authorization and TwiML generation.

Twilio hits the voice webhook for every incoming call. Authorized callers get a
bidirectional media stream to the relay; everyone else hears a short message
and the call is rejected.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.relay.config import get_config

logger = structlog.get_logger(__name__)

REJECT_MESSAGE = "Sorry, this number is not authorized."
STREAM_PAUSE_SECONDS = 60


@dataclass(frozen=True)
class CallDecision:
    """Outcome of the inbound webhook."""
    accepted: bool
    twiml: str
    caller: str = ""


def build_reject_twiml(message: str = REJECT_MESSAGE) -> str:
    """TwiML that speaks a message and rejects the call."""
    response = VoiceResponse()
    response.say(message)
    response.reject(reason="rejected")
    return str(response)


def build_stream_twiml(stream_url: str) -> str:
    """TwiML that opens a bidirectional media stream to the relay."""
    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=stream_url)
    response.append(connect)
    # Keeps the call leg alive if Twilio falls through <Connect>.
    response.pause(length=STREAM_PAUSE_SECONDS)
    return str(response)


def authorize_call(caller: str, request_host: str, config: Optional[Any] = None) -> CallDecision:
    """
    Decide whether to stream an incoming call.

    Args:
        caller: The caller identifier (Twilio `From`)
        request_host: Host header of the webhook request
        config: Optional configuration (uses default if not provided)

    Returns:
        CallDecision with the TwiML to return
    """
    if config is None:
        config = get_config()

    if not config.is_caller_allowed(caller):
        logger.warning("Rejected unauthorized caller", caller=caller)
        return CallDecision(accepted=False, twiml=build_reject_twiml(), caller=caller)

    stream_url = config.stream_url(request_host)
    logger.info("Accepted caller", caller=caller, ws_url=stream_url)
    return CallDecision(accepted=True, twiml=build_stream_twiml(stream_url), caller=caller)


def is_valid_twilio_signature(
    url: str,
    params: Mapping[str, str],
    signature: str,
    config: Optional[Any] = None,
) -> bool:
    """Validate the X-Twilio-Signature header when signature checks are enabled."""
    if config is None:
        config = get_config()

    if not config.twilio_validate_signature:
        return True

    if not signature or not config.twilio_auth_token:
        return False

    validator = RequestValidator(config.twilio_auth_token)
    return bool(validator.validate(url, dict(params), signature))

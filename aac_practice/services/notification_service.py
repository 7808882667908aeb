# aac_practice/services/notification_service.py
import logging
from typing import Any, Dict, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from ..config import Settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Outbound SMS, voice and email.

    Each channel is live only when its credentials are configured; otherwise
    the message is logged and reported back as simulated. Failures are
    reported in the result and never raised to the caller.
    """

    def __init__(self, settings: Settings, twilio_client: Optional[Client] = None,
                 sendgrid_client: Optional[SendGridAPIClient] = None):
        self.settings = settings
        self.from_number = settings.twilio_from_number
        self.sender_email = settings.sender_email

        self.twilio_client = twilio_client
        if self.twilio_client is None and settings.sms_enabled:
            self.twilio_client = Client(settings.twilio_account_sid, settings.twilio_auth_token)

        self.sendgrid_client = sendgrid_client
        if self.sendgrid_client is None and settings.email_enabled:
            self.sendgrid_client = SendGridAPIClient(api_key=settings.sendgrid_api_key)

        if not self.twilio_client:
            logger.warning("Twilio not configured - SMS and calls will be simulated")
        if not self.sendgrid_client:
            logger.warning("SendGrid not configured - email will be simulated")

    def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        if not self.twilio_client:
            logger.info(f"[simulated sms] to={to} chars={len(body)}")
            return {"success": True, "simulated": True, "channel": "sms"}
        try:
            message = self.twilio_client.messages.create(body=body, from_=self.from_number, to=to)
            logger.info(f"SMS sent to {to}, sid={message.sid}")
            return {"success": True, "simulated": False, "channel": "sms", "sid": message.sid}
        except TwilioRestException as e:
            logger.error(f"Twilio SMS to {to} failed: {e}")
            return {"success": False, "simulated": False, "channel": "sms", "error": str(e)}

    def place_call(self, to: str, script: str) -> Dict[str, Any]:
        if not self.twilio_client:
            logger.info(f"[simulated call] to={to}")
            return {"success": True, "simulated": True, "channel": "call"}
        try:
            call = self.twilio_client.calls.create(
                twiml=f"<Response><Say>{_escape_xml(script)}</Say></Response>",
                from_=self.from_number,
                to=to,
            )
            logger.info(f"Call placed to {to}, sid={call.sid}")
            return {"success": True, "simulated": False, "channel": "call", "sid": call.sid}
        except TwilioRestException as e:
            logger.error(f"Twilio call to {to} failed: {e}")
            return {"success": False, "simulated": False, "channel": "call", "error": str(e)}

    def send_email(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        if not self.sendgrid_client:
            logger.info(f"[simulated email] to={to} subject={subject!r}")
            return {"success": True, "simulated": True, "channel": "email"}
        try:
            mail = Mail(
                from_email=self.sender_email,
                to_emails=to,
                subject=subject,
                plain_text_content=body,
            )
            response = self.sendgrid_client.send(mail)
            if response.status_code in (200, 201, 202):
                return {"success": True, "simulated": False, "channel": "email"}
            logger.error(f"SendGrid returned {response.status_code} for {to}")
            return {"success": False, "simulated": False, "channel": "email", "error": f"status {response.status_code}"}
        except Exception as e:
            # sendgrid surfaces transport errors as python_http_client exceptions
            logger.error(f"SendGrid email to {to} failed: {e}")
            return {"success": False, "simulated": False, "channel": "email", "error": str(e)}


def _escape_xml(text: str) -> str:
    return (text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;"))

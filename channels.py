"""Notification channel adapters.

Three independent ways to reach a reminder owner:
- VoiceChannel: outbound phone call through the Twilio REST API
- EmailChannel: transactional email through the SendGrid v3 API
- PushChannel: real-time event to the owner's open WebSocket connections

Every adapter raises ChannelError on failure; callers decide whether that
failure matters. Message rendering for each channel lives here too.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from html import escape as html_escape
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape as xml_escape

import httpx
from fastapi import WebSocket

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'channels.log')


class ChannelError(Exception):
    """A notification channel could not deliver."""


@dataclass
class ReminderNotification:
    """Payload shared by every channel for one reminder firing."""
    reminder_id: str
    user_id: str
    description: str
    trigger_type: str
    timestamp: str
    location_name: Optional[str] = None

    @classmethod
    def from_reminder(cls, reminder, trigger_type: str) -> "ReminderNotification":
        """Snapshot a Reminder row so channels never touch the session."""
        return cls(
            reminder_id=reminder.id,
            user_id=reminder.user_id,
            description=reminder.description,
            trigger_type=getattr(trigger_type, "value", trigger_type),
            timestamp=datetime.now(timezone.utc).isoformat(),
            location_name=reminder.location_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CallStatusResult:
    """Provider view of a call: status string and duration in seconds."""
    status: str
    duration: int = 0


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------

def _format_trigger_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).strftime("%m/%d/%Y, %I:%M %p")
    except ValueError:
        return timestamp


def build_email_subject(notification: ReminderNotification) -> str:
    return f"Reminder: {notification.description}"


def build_email_text(firstname: str, notification: ReminderNotification) -> str:
    """Plain-text reminder email body."""
    lines = [f"Hello {firstname},", "", f"This is a reminder for: {notification.description}", ""]

    if notification.trigger_type == "time":
        lines.append(f"Time-based reminder triggered at {_format_trigger_time(notification.timestamp)}")
    else:
        lines.append("Location-based reminder triggered")
        if notification.location_name:
            lines.append(f"Location: {notification.location_name}")

    lines += ["", "Best regards,", "Botie Team"]
    return "\n".join(lines)


def build_email_html(firstname: str, notification: ReminderNotification) -> str:
    """Minimal HTML reminder email body."""
    kind = "Time-based reminder" if notification.trigger_type == "time" else "Location-based reminder"
    location = ""
    if notification.location_name:
        location = f"<p><strong>Location:</strong> {html_escape(notification.location_name)}</p>"

    return (
        "<html><body>"
        f"<p>Hello {html_escape(firstname)},</p>"
        f"<h2>{html_escape(notification.description)}</h2>"
        f"<p>{kind} triggered at {html_escape(_format_trigger_time(notification.timestamp))}</p>"
        f"{location}"
        "<p>Best regards,<br>Botie Team</p>"
        "</body></html>"
    )


def build_call_message(notification: ReminderNotification) -> str:
    """Text spoken to the owner when the reminder call is answered."""
    message = f"Hi, this is Botie. You have a reminder: {notification.description}"
    if notification.location_name:
        message += f" at location {notification.location_name}"
    return message + "."


# ---------------------------------------------------------------------------
# Voice
# ---------------------------------------------------------------------------

class VoiceChannel:
    """Places and inspects calls through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str = None,
        auth_token: str = None,
        api_url: str = None,
        ring_timeout: int = None,
        timeout: float = None
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.api_url = (api_url or settings.TWILIO_API_URL).rstrip("/")
        self.ring_timeout = ring_timeout or settings.CALL_RING_TIMEOUT
        self.timeout = timeout or settings.HTTP_TIMEOUT

    @property
    def _calls_url(self) -> str:
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}/Calls"

    async def place_call(self, to: str, from_: str, message: str, status_callback_url: str) -> str:
        """Start an outbound call that speaks the message.

        Args:
            to: Destination number (E.164)
            from_: Provisioned calling number
            message: Text to speak
            status_callback_url: Where the provider posts the final call status

        Returns:
            str: Provider call reference (Call SID)

        Raises:
            ChannelError: If the provider rejects the request or is unreachable
        """
        payload = {
            "To": to,
            "From": from_,
            "Twiml": f"<Response><Say>{xml_escape(message)}</Say></Response>",
            "StatusCallback": status_callback_url,
            "StatusCallbackMethod": "POST",
            "Timeout": str(self.ring_timeout),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self._calls_url}.json",
                    data=payload,
                    auth=(self.account_sid, self.auth_token)
                )
        except httpx.HTTPError as e:
            raise ChannelError(f"Twilio request failed: {e}") from e

        if response.status_code not in (200, 201):
            raise ChannelError(
                f"Twilio rejected call to {to}. Status: {response.status_code}, Response: {response.text}"
            )

        call_sid = response.json().get("sid")
        if not call_sid:
            raise ChannelError("Twilio response did not include a call SID")
        return call_sid

    async def get_call_status(self, call_reference: str) -> CallStatusResult:
        """Fetch the current status and duration of a call.

        Raises:
            ChannelError: If the lookup fails
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self._calls_url}/{call_reference}.json",
                    auth=(self.account_sid, self.auth_token)
                )
        except httpx.HTTPError as e:
            raise ChannelError(f"Twilio status lookup failed: {e}") from e

        if response.status_code != 200:
            raise ChannelError(
                f"Twilio status lookup for {call_reference} failed. Status: {response.status_code}"
            )

        data = response.json()
        return CallStatusResult(
            status=data.get("status") or "unknown",
            duration=parse_duration(data.get("duration"))
        )


def parse_duration(value: Any) -> int:
    """Provider durations arrive as strings, numbers or null."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class EmailChannel:
    """Sends email through the SendGrid v3 mail/send endpoint."""

    def __init__(
        self,
        api_key: str = None,
        api_url: str = None,
        from_email: str = None,
        from_name: str = None,
        timeout: float = None
    ):
        self.api_key = api_key or settings.SENDGRID_API_KEY
        self.api_url = (api_url or settings.SENDGRID_API_URL).rstrip("/")
        self.from_email = from_email or settings.EMAIL_FROM
        self.from_name = from_name or settings.EMAIL_FROM_NAME
        self.timeout = timeout or settings.HTTP_TIMEOUT

    async def send_email(self, to: str, subject: str, text: str, html: str) -> None:
        """Send one email.

        Raises:
            ChannelError: If SendGrid does not accept the message
        """
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/v3/mail/send",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"}
                )
        except httpx.HTTPError as e:
            raise ChannelError(f"SendGrid request failed: {e}") from e

        if response.status_code >= 300:
            raise ChannelError(
                f"Email could not be sent to {to}. Status: {response.status_code}, Response: {response.text}"
            )


# ---------------------------------------------------------------------------
# Real-time push
# ---------------------------------------------------------------------------

class PushChannel:
    """Tracks WebSocket connections per user and pushes events to them."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    @staticmethod
    def room(user_id: str) -> str:
        return f"user-{user_id}"

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(self.room(user_id), []).append(websocket)

    def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        room = self.room(user_id)
        connections = self.active_connections.get(room)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            del self.active_connections[room]

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(self.room(user_id), []))

    async def emit_to_user(self, user_id: str, event_name: str, payload: Dict[str, Any]) -> int:
        """Send an event to every open connection of the user.

        Returns:
            int: Number of connections that received the event
        """
        message = {
            "event": event_name,
            "data": payload,
            "timestamp": datetime.now().astimezone().isoformat(),
        }

        delivered = 0
        for websocket in list(self.active_connections.get(self.room(user_id), [])):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead WebSocket for user {user_id}: {e}")
                self.disconnect(websocket, user_id)

        if delivered:
            logger.info(f"Event '{event_name}' pushed to user {user_id} ({delivered} connection(s))")
        return delivered

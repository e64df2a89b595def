"""
services/notification/channels.py
Outbound delivery: FCM push, Twilio SMS, Resend email.

Each sender is synchronous (the vendor SDKs are), guarded by a circuit breaker,
skipped when its channel is not configured, and returns True/False instead of raising.
"""

import logging
from html import escape
from typing import Optional

from pybreaker import CircuitBreakerError

from config.settings import settings
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

FCM = "fcm"
TWILIO = "twilio"
RESEND = "resend"


def push_configured() -> bool:
    return bool(settings.FIREBASE_PROJECT_ID)


def sms_configured() -> bool:
    return bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER)


def email_configured() -> bool:
    return bool(settings.RESEND_API_KEY)


def normalize_phone(phone: str) -> str:
    phone = phone.strip().replace(" ", "")
    return phone if phone.startswith("+") else f"{settings.DEFAULT_COUNTRY_CODE}{phone}"


def _guarded(service: str, func, *args, **kwargs) -> bool:
    try:
        circuit_breaker_manager.call(service, func, *args, **kwargs)
        return True
    except CircuitBreakerError:
        logger.warning(f"{service} circuit open, delivery skipped")
        return False
    except Exception as e:
        logger.warning(f"{service} delivery failed: {e}")
        return False


# ── Vendor calls ──────────────────────────────────────────────

def _fcm_send(fcm_token: str, title: str, body: str, data: Optional[dict]) -> None:
    import firebase_admin
    from firebase_admin import credentials, messaging

    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred, {"projectId": settings.FIREBASE_PROJECT_ID})

    message = messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in (data or {}).items()},
        token=fcm_token,
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default"),
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))
        ),
    )
    messaging.send(message)


def _twilio_send(phone: str, body: str) -> None:
    from twilio.rest import Client

    client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    client.messages.create(body=body, from_=settings.TWILIO_FROM_NUMBER, to=normalize_phone(phone))


def _resend_send(to_email: str, to_name: Optional[str], subject: str, html_body: str,
                 attachments: Optional[list]) -> None:
    import resend

    resend.api_key = settings.RESEND_API_KEY
    params = {
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [f"{to_name} <{to_email}>" if to_name else to_email],
        "subject": subject,
        "html": html_body,
    }
    if attachments:
        params["attachments"] = attachments
    resend.Emails.send(params)


# ── Public senders ────────────────────────────────────────────

def send_push(fcm_token: Optional[str], title: str, body: str, data: Optional[dict] = None) -> bool:
    """Send Firebase Cloud Messaging push notification."""
    if not fcm_token or not push_configured():
        return False
    return _guarded(FCM, _fcm_send, fcm_token, title, body, data)


def send_sms(phone: Optional[str], body: str) -> bool:
    """Send SMS via Twilio."""
    if not phone or not sms_configured():
        return False
    return _guarded(TWILIO, _twilio_send, phone, body)


async def send_sms_now(phone: str, body: str) -> None:
    """
    Send an SMS from the request path and wait for Twilio.
    Unlike send_sms, failures raise: Twilio's own errors, or CircuitBreakerError once the breaker is open.
    """
    await circuit_breaker_manager.call_async(TWILIO, _twilio_send, phone, body)


def send_email(
    to_email: Optional[str],
    subject: str,
    html_body: str,
    to_name: Optional[str] = None,
    attachments: Optional[list] = None,
) -> bool:
    """
    Send transactional email via Resend.
    attachments: [{"filename": "remedy.pdf", "content": list(pdf_bytes)}]
    """
    if not to_email or not email_configured():
        return False
    return _guarded(RESEND, _resend_send, to_email, to_name, subject, html_body, attachments)


def render_email_html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #E65100; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
            <h1 style="color: white; margin: 0;">{escape(settings.ASHRAM_NAME)}</h1>
        </div>
        <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
            <h2 style="color: #333;">{escape(title)}</h2>
            <p style="color: #666; line-height: 1.6;">{escape(body)}</p>
            <p style="color: #999; font-size: 12px; margin-top: 24px;">
                You received this email because you are registered with {escape(settings.ASHRAM_NAME)}.
            </p>
        </div>
    </div>
    """

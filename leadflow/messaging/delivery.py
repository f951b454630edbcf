"""
Touch point delivery
====================
Builds the handler the touch point processor calls for every due lead.
"""

from typing import Optional

from loguru import logger

from leadflow.config import Settings
from leadflow.jobs.touch_point_processor import TouchPointAction, TouchPointHandler
from leadflow.messaging.channels import SendGridEmailChannel, TwilioSmsChannel


def chat_link(base_url: str, lead_id: str) -> str:
    return f"{base_url.rstrip('/')}/{lead_id}"


def render_invitation(action: TouchPointAction, link: str) -> tuple[str, str, str]:
    """(subject, email text, sms text) for a chat invitation"""
    name = action.customer_name.split(" ")[0] if action.customer_name else "there"
    subject = "Your quote: chat with us"
    email_text = (
        f"Hi {name},\n\n"
        f"Thanks for requesting a quote. If you have any questions or want to book "
        f"an appointment, you can chat with us here: {link}\n"
    )
    sms_text = f"Hi {name}, questions about your quote? Chat with us: {link}"
    return subject, email_text, sms_text


def is_whitelisted(email: Optional[str], whitelist: list[str]) -> bool:
    """An empty whitelist lets nothing through"""
    if not email or not whitelist:
        return False
    return email.lower() in whitelist


def build_delivery_handler(settings: Settings, email_channel: Optional[SendGridEmailChannel] = None,
                           sms_channel: Optional[TwilioSmsChannel] = None) -> TouchPointHandler:
    """
    Handler sending one chat invitation per touch point on every channel the
    lead can be reached on. Reports success if at least one channel worked.

    Leads outside the outbound whitelist, or with no usable channel, are not
    contacted. They count as delivered when COUNT_UNDELIVERABLE_AS_SENT is on
    so the sequence still advances.
    """
    whitelist = settings.outbound_email_whitelist
    undeliverable_result = settings.count_undeliverable_as_sent

    if not whitelist:
        logger.warning("Outbound email whitelist is empty, all outbound messages are disabled")

    async def handle(action: TouchPointAction) -> bool:
        email = action.customer_email

        if not is_whitelisted(email, whitelist):
            logger.warning(
                f"Email {email or '<none>'} is not whitelisted, skipping outbound "
                f"touch point {action.touch_point_number} for lead {action.lead_id}"
            )
            return undeliverable_result

        send_email = email_channel is not None and bool(email)
        send_sms = sms_channel is not None and bool(action.customer_phone)
        if not send_email and not send_sms:
            logger.warning(f"Lead {action.lead_id} has no reachable channel, touch point not sent")
            return undeliverable_result

        subject, email_text, sms_text = render_invitation(action, chat_link(settings.chat_base_url, action.lead_id))

        email_sent = await email_channel.send(email, subject, email_text) if send_email else False
        sms_sent = await sms_channel.send(action.customer_phone, sms_text) if send_sms else False

        return email_sent or sms_sent

    return handle


def build_channels(settings: Settings) -> tuple[Optional[SendGridEmailChannel], Optional[TwilioSmsChannel]]:
    """Channels for whichever providers are configured"""
    email_channel = None
    if settings.sendgrid_api_key and settings.sendgrid_from_email:
        email_channel = SendGridEmailChannel(
            settings.sendgrid_api_key, settings.sendgrid_from_email, settings.sendgrid_from_name
        )
    else:
        logger.warning("SendGrid not configured, email touch points disabled")

    sms_channel = None
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number:
        sms_channel = TwilioSmsChannel(
            settings.twilio_account_sid, settings.twilio_auth_token, settings.twilio_phone_number
        )
    else:
        logger.info("Twilio not configured, SMS touch points disabled")

    return email_channel, sms_channel

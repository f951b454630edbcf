"""
Outbound channels
=================
Thin httpx wrappers around SendGrid (email) and Twilio (SMS).
`send` returns True on a 2xx answer and never raises for transport errors.
"""

from typing import Optional

import httpx
from loguru import logger


SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


class SendGridEmailChannel:

    def __init__(self, api_key: str, from_email: str, from_name: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._client = client

    async def send(self, to: str, subject: str, text: str) -> bool:
        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await _post(self._client, SENDGRID_URL, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"SendGrid email to {to} failed: {e}")
            return False

        logger.info(f"Email sent to {to}")
        return True


class TwilioSmsChannel:

    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 client: Optional[httpx.AsyncClient] = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = client

    async def send(self, to: str, body: str) -> bool:
        url = TWILIO_URL.format(account_sid=self.account_sid)
        data = {"From": self.from_number, "To": to, "Body": body}

        try:
            response = await _post(self._client, url, data=data, auth=(self.account_sid, self.auth_token))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Twilio SMS to {to} failed: {e}")
            return False

        logger.info(f"SMS sent to {to}")
        return True


async def _post(client: Optional[httpx.AsyncClient], url: str, **kwargs) -> httpx.Response:
    if client is not None:
        return await client.post(url, **kwargs)
    async with httpx.AsyncClient(timeout=20) as owned:
        return await owned.post(url, **kwargs)

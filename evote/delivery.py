"""
OTP delivery over the voter's chosen channel.

EMAIL goes through ``email_util`` (aiosmtplib); SMS is POSTed to an HTTP SMS
gateway with httpx.  Any failure propagates to the caller, which reports it
to the voter as ``ChannelUnavailable``.
"""
import logging

import httpx

from .config import Settings
from .email_util import send_otp_email
from .errors import ChannelUnavailable
from .models import Channel

logger = logging.getLogger(__name__)


class OtpSender:

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.http_client = http_client

    def supports(self, channel: Channel) -> bool:
        if channel is Channel.SMS:
            return bool(self.settings.sms_gateway_url)
        return True

    async def send(self, channel: Channel, address: str, code: str) -> None:
        if channel is Channel.EMAIL:
            await send_otp_email(self.settings, address, code)
        elif channel is Channel.SMS:
            await self._send_sms(address, code)
        else:
            raise ChannelUnavailable()

    async def _send_sms(self, phone: str, code: str) -> None:
        if not self.settings.sms_gateway_url:
            raise ChannelUnavailable("SMS delivery is not configured")
        payload = {
            "to": phone,
            "from": self.settings.sms_sender_id,
            "message": (
                f"{self.settings.election_title}: your verification code is {code}. "
                f"It expires in {self.settings.otp_ttl_minutes} minutes."
            ),
        }
        headers = {}
        if self.settings.sms_gateway_key:
            headers["Authorization"] = f"Bearer {self.settings.sms_gateway_key}"

        if self.http_client is not None:
            resp = await self.http_client.post(
                self.settings.sms_gateway_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    self.settings.sms_gateway_url, json=payload, headers=headers)
        resp.raise_for_status()
        logger.info(f"SMS sent to {phone[:4]}***")

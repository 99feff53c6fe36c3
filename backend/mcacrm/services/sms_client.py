"""Twilio SMS delivery over the REST API."""

import httpx
import logging
from dataclasses import dataclass
from typing import Optional

from mcacrm.config import settings
from mcacrm.services.normalization import normalization_service

logger = logging.getLogger(__name__)


@dataclass
class SMSResult:
    success: bool
    external_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class TwilioSMSClient:
    """Send SMS through Twilio's Messages resource."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER
        self.base_url = (base_url or settings.TWILIO_API_BASE).rstrip("/")
        self.timeout = timeout or settings.SMS_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to: str, body: str) -> SMSResult:
        """
        Send one message. Never raises: carrier and network errors come back
        as an unsuccessful SMSResult.
        """
        if not self.is_configured:
            return SMSResult(success=False, error="SMS carrier is not configured")
        if not to:
            return SMSResult(success=False, error="Conversation has no phone number")

        to_number = normalization_service.normalize_phone(to)
        url = f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed for {to_number}: {e}")
            return SMSResult(success=False, error=f"SMS request failed: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.error(f"Twilio returned {response.status_code} for {to_number}: {detail}")
            return SMSResult(success=False, error=f"Twilio error {response.status_code}: {detail}")

        try:
            data = response.json()
        except ValueError:
            # accepted, but the body is not JSON
            logger.warning(f"SMS sent to {to_number}; unreadable Twilio response body")
            return SMSResult(success=True)
        logger.info(f"SMS sent to {to_number}: {data.get('sid')}")
        return SMSResult(success=True, external_id=data.get("sid"), status=data.get("status"))


sms_client = TwilioSMSClient()

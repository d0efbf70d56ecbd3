"""Out-of-band OTP delivery: email over SMTP, SMS over an HTTP gateway."""
from __future__ import annotations

import asyncio
import logging
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import httpx

import config

logger = logging.getLogger("portal.delivery")

CHANNELS = ("phone", "email")


def mask_contact(contact: str, channel: str) -> str:
    """Mask a phone number or email address for display and logs."""
    if not contact:
        return ""
    if channel == "phone":
        return re.sub(r"(\+?\d{2,3})\d+(\d{4})", r"\1****\2", contact)
    return re.sub(r"(.{2}).*@", r"\1***@", contact)


class OTPSender:
    """Delivers OTP codes. A channel without configuration logs the code instead (development)."""

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Member Portal Security",
        sms_gateway_url: str = "",
        sms_gateway_token: str = "",
        sms_sender_id: str = "PORTAL",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.sms_gateway_url = sms_gateway_url
        self.sms_gateway_token = sms_gateway_token
        self.sms_sender_id = sms_sender_id

    @classmethod
    def from_config(cls) -> "OTPSender":
        return cls(
            smtp_host=config.SMTP_HOST,
            smtp_port=config.SMTP_PORT,
            smtp_user=config.SMTP_USER,
            smtp_password=config.SMTP_PASSWORD,
            from_email=config.SMTP_FROM,
            from_name=config.SMTP_FROM_NAME,
            sms_gateway_url=config.SMS_GATEWAY_URL,
            sms_gateway_token=config.SMS_GATEWAY_TOKEN,
            sms_sender_id=config.SMS_SENDER_ID,
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def sms_configured(self) -> bool:
        return bool(self.sms_gateway_url)

    async def send(self, contact: str, channel: str, code: str) -> bool:
        """Deliver code to contact. Returns False when the provider reports failure."""
        if channel == "email":
            return await self.send_email(contact, code)
        if channel == "phone":
            return await self.send_sms(contact, code)
        raise ValueError(f"Unknown OTP channel: {channel}")

    async def send_email(self, email: str, code: str) -> bool:
        if not self.email_configured:
            logger.info("SMTP not configured - OTP for %s is %s", mask_contact(email, "email"), code)
            return True
        return await asyncio.to_thread(self._send_email_sync, email, code)

    def _send_email_sync(self, email: str, code: str) -> bool:
        minutes = config.OTP_TTL_MINUTES
        msg = MIMEMultipart("alternative")
        msg["Subject"] = "Your verification code"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = email
        msg.attach(MIMEText(
            f"Your verification code is: {code}\n\n"
            f"This code will expire in {minutes} minutes and can be used once.\n\n"
            "If you didn't request this code, please ignore this email.",
            "plain",
        ))
        msg.attach(MIMEText(
            f"<p>Your verification code is:</p>"
            f"<p style=\"font-size:28px;letter-spacing:8px;font-family:monospace\"><strong>{code}</strong></p>"
            f"<p>This code expires in {minutes} minutes and can be used once.</p>",
            "html",
        ))
        context = ssl.create_default_context()
        try:
            if self.smtp_port == 465:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    refused = server.sendmail(self.from_email, [email], msg.as_string())
            else:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    refused = server.sendmail(self.from_email, [email], msg.as_string())
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send OTP email to %s", mask_contact(email, "email"))
            return False
        if refused:
            logger.warning("SMTP server refused recipient %s", mask_contact(email, "email"))
            return False
        logger.info("OTP email sent to %s", mask_contact(email, "email"))
        return True

    async def send_sms(self, phone: str, code: str) -> bool:
        if not self.sms_configured:
            logger.info("SMS gateway not configured - OTP for %s is %s", mask_contact(phone, "phone"), code)
            return True
        headers = {}
        if self.sms_gateway_token:
            headers["Authorization"] = f"Bearer {self.sms_gateway_token}"
        payload = {
            "to": phone,
            "from": self.sms_sender_id,
            "message": f"Your verification code is {code}. It expires in {config.OTP_TTL_MINUTES} minutes.",
        }
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                r = await client.post(self.sms_gateway_url, json=payload, headers=headers)
        except httpx.HTTPError:
            logger.exception("Failed to reach SMS gateway for %s", mask_contact(phone, "phone"))
            return False
        if r.status_code >= 400:
            logger.warning("SMS gateway rejected OTP for %s: %s %s", mask_contact(phone, "phone"), r.status_code, r.text)
            return False
        logger.info("OTP SMS sent to %s", mask_contact(phone, "phone"))
        return True

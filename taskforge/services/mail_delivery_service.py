"""
Outbound email for account flows.
Tries Brevo, then Mailjet, then SMTP, depending on what is configured.
"""
import asyncio
import json
import logging
import os
import re
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import app_name


logger = logging.getLogger(__name__)

_INVISIBLE_EMAIL_CHARS = re.compile(
    r"[\u0000-\u001F\u007F\u00A0\u1680\u180E\u2000-\u200F\u2028-\u202F\u205F-\u206F\u3000\uFEFF]"
)
_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"
MAILJET_SEND_URL = "https://api.mailjet.com/v3.1/send"


def sanitize_email(raw_email: str) -> str:
    normalized = (
        str(raw_email or "")
        .replace("\n", "")
        .replace("\r", "")
        .replace("\t", "")
        .replace(" ", "")
        .strip()
        .lower()
    )
    return _INVISIBLE_EMAIL_CHARS.sub("", normalized)


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_PATTERN.match(email or ""))


class MailDeliveryError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        category: str,
        status_code: Optional[int] = None,
        response_excerpt: str = "",
    ):
        super().__init__(message)
        self.provider = provider
        self.category = category
        self.status_code = status_code
        self.response_excerpt = (response_excerpt or "")[:400]


def classify_mail_error(reason: str, status_code: Optional[int]) -> str:
    text = (reason or "").lower()
    if status_code in {401, 403}:
        return "auth_failed"
    if status_code == 429 or "too many" in text or "rate limit" in text or "quota" in text:
        return "rate_limited"
    if "sender" in text and any(
        marker in text
        for marker in ("not validated", "not verified", "not allowed", "inactive", "not active")
    ):
        return "sender_not_verified"
    if "authentication" in text or "unauthorized" in text or "forbidden" in text:
        return "auth_failed"
    if ("recipient" in text or "email" in text) and (
        "invalid" in text or "malformed" in text or "bad request" in text
    ):
        return "invalid_recipient"
    return "delivery_failed"


class MailDeliveryService:
    def __init__(self):
        # Provider preference: auto, brevo, mailjet, smtp
        self.email_provider = (os.getenv("EMAIL_PROVIDER") or "auto").strip().lower()
        self.from_name = (os.getenv("FROM_NAME") or app_name()).strip()
        self.from_email = sanitize_email(
            os.getenv("FROM_EMAIL")
            or os.getenv("BREVO_FROM_EMAIL")
            or os.getenv("MAILJET_FROM_EMAIL")
            or os.getenv("SMTP_FROM")
            or ""
        )

        self.brevo_api_key = (os.getenv("BREVO_API_KEY") or "").strip()
        self.brevo_configured = bool(self.brevo_api_key and self.from_email)

        self.mailjet_api_key = (os.getenv("MAILJET_API_KEY") or "").strip()
        self.mailjet_secret_key = (os.getenv("MAILJET_SECRET_KEY") or "").strip()
        self.mailjet_configured = bool(
            self.mailjet_api_key and self.mailjet_secret_key and self.from_email
        )

        self.smtp_host = (os.getenv("SMTP_HOST") or "").strip()
        self.smtp_port = int((os.getenv("SMTP_PORT") or "587").strip())
        self.smtp_user = (os.getenv("SMTP_USER") or "").strip()
        self.smtp_pass = (os.getenv("SMTP_PASS") or "").strip()
        self.smtp_from = self.from_email or sanitize_email(self.smtp_user)
        self.smtp_tls = (os.getenv("SMTP_TLS") or "true").strip().lower() != "false"
        self.smtp_configured = bool(
            self.smtp_host and self.smtp_user and self.smtp_pass and self.smtp_from
        )

        self.email_configured = (
            self.brevo_configured or self.mailjet_configured or self.smtp_configured
        )

    async def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> Dict[str, Any]:
        recipient = sanitize_email(to_email)
        if not is_valid_email(recipient):
            raise MailDeliveryError(
                "Invalid recipient email.",
                provider="none",
                category="invalid_recipient",
            )
        if not self.email_configured:
            raise RuntimeError("Email provider is not configured.")

        message = {
            "to_email": recipient,
            "subject": str(subject or "").strip()[:255],
            "text_body": str(text_body or "").strip(),
            "html_body": (html_body or "").strip() or None,
        }

        senders = {
            "brevo": (self.brevo_configured, self._send_via_brevo),
            "mailjet": (self.mailjet_configured, self._send_via_mailjet),
            "smtp": (self.smtp_configured, self._send_via_smtp),
        }
        errors: List[Exception] = []
        for provider in self._provider_order():
            configured, send = senders[provider]
            if not configured:
                continue
            try:
                result = await send(**message)
                logger.info("[Mail] Sent '%s' to %s via %s", message["subject"], recipient, provider)
                return result
            except MailDeliveryError as exc:
                logger.warning("[Mail] %s failed for %s: %s", provider, recipient, exc)
                errors.append(exc)
                # Invalid recipient is deterministic; don't retry other providers.
                if exc.category == "invalid_recipient":
                    raise
            except Exception as exc:
                logger.warning("[Mail] %s failed for %s: %s", provider, recipient, exc)
                errors.append(exc)

        if errors:
            last_error = errors[-1]
            if isinstance(last_error, MailDeliveryError):
                raise last_error
            raise RuntimeError(f"Email send failed: {last_error}")
        raise RuntimeError("Email provider is not configured.")

    def _provider_order(self) -> List[str]:
        preferred = self.email_provider
        if preferred == "brevo":
            return ["brevo", "smtp"]
        if preferred == "mailjet":
            return ["mailjet", "smtp"]
        if preferred == "smtp":
            return ["smtp"]
        return ["brevo", "mailjet", "smtp"]

    async def _send_via_brevo(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sender": {"email": self.from_email, "name": self.from_name},
            "to": [{"email": to_email}],
            "subject": subject,
            "textContent": text_body,
        }
        if html_body:
            payload["htmlContent"] = html_body

        timeout = aiohttp.ClientTimeout(total=20)
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "api-key": self.brevo_api_key,
        }
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            async with session.post(BREVO_SEND_URL, json=payload) as response:
                body = await response.text()
                parsed = self._parse_json(body)
                if response.status >= 400:
                    reason = self._extract_provider_error(parsed, body)
                    raise MailDeliveryError(
                        f"Brevo send failed ({response.status}): {reason}",
                        provider="brevo",
                        category=classify_mail_error(reason, response.status),
                        status_code=response.status,
                        response_excerpt=body,
                    )
                return {
                    "provider": "brevo",
                    "status_code": response.status,
                    "message_id": parsed.get("messageId"),
                }

    async def _send_via_mailjet(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "From": {"Email": self.from_email, "Name": self.from_name},
            "To": [{"Email": to_email}],
            "Subject": subject,
            "TextPart": text_body,
        }
        if html_body:
            message["HTMLPart"] = html_body

        timeout = aiohttp.ClientTimeout(total=20)
        auth = aiohttp.BasicAuth(self.mailjet_api_key, self.mailjet_secret_key)
        async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
            async with session.post(MAILJET_SEND_URL, json={"Messages": [message]}) as response:
                body = await response.text()
                parsed = self._parse_json(body)
                reason = ""
                if response.status >= 400:
                    reason = self._extract_provider_error(parsed, body)
                else:
                    # Mailjet can return HTTP 200 with a per-message error status.
                    for item in parsed.get("Messages") or []:
                        if isinstance(item, dict) and str(item.get("Status") or "").lower() not in {"", "success"}:
                            reason = json.dumps(item.get("Errors") or item.get("Status"))[:300]
                            break
                if reason:
                    raise MailDeliveryError(
                        f"Mailjet send failed ({response.status}): {reason}",
                        provider="mailjet",
                        category=classify_mail_error(reason, response.status),
                        status_code=response.status,
                        response_excerpt=body,
                    )
                return {"provider": "mailjet", "status_code": response.status}

    async def _send_via_smtp(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> Dict[str, Any]:
        def _send() -> None:
            msg = EmailMessage()
            msg["From"] = f"{self.from_name} <{self.smtp_from}>"
            msg["To"] = to_email
            msg["Subject"] = subject
            msg.set_content(text_body)
            if html_body:
                msg.add_alternative(html_body, subtype="html")

            if self.smtp_port == 465:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=15)
            else:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15)
            with server:
                if self.smtp_tls and self.smtp_port != 465:
                    server.starttls()
                server.login(self.smtp_user, self.smtp_pass)
                server.send_message(msg)

        try:
            await asyncio.to_thread(_send)
        except smtplib.SMTPRecipientsRefused as exc:
            raise MailDeliveryError(
                f"SMTP refused recipient: {exc}",
                provider="smtp",
                category="invalid_recipient",
            ) from exc
        except smtplib.SMTPAuthenticationError as exc:
            raise MailDeliveryError(
                f"SMTP authentication failed: {exc}",
                provider="smtp",
                category="auth_failed",
            ) from exc
        return {"provider": "smtp", "status_code": 200}

    def _parse_json(self, body: str) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _extract_provider_error(self, parsed: Dict[str, Any], raw_body: str) -> str:
        if parsed:
            direct_error = (
                parsed.get("ErrorMessage")
                or parsed.get("message")
                or parsed.get("Message")
                or parsed.get("error")
                or parsed.get("Error")
            )
            if direct_error:
                return str(direct_error)
            code = parsed.get("code")
            if code:
                return str(code)
        return (raw_body or "unknown provider error")[:300]

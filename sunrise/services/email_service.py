from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence, Union

import requests

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

EmailStatus = Literal["sent", "failed", "disabled"]


class EmailError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmailResult:
    success: bool
    status: EmailStatus
    id: Optional[str] = None
    error: Optional[str] = None


class EmailService:
    """Transactional email through the Resend HTTP API.

    When RESEND_API_KEY / EMAIL_FROM are missing, development and test get a
    mock success while production refuses to pretend.
    """

    def __init__(
        self,
        *,
        api_key: str,
        email_from: str,
        email_from_name: str = "",
        env: str = "development",
        require_verification: bool = False,
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._email_from = email_from
        self._email_from_name = email_from_name
        self._env = env
        self._require_verification = require_verification
        self._timeout_s = timeout_s
        self._http = session or requests.Session()
        self._config_warned = False

    @property
    def enabled(self) -> bool:
        return bool(self._api_key and self._email_from)

    @property
    def default_sender(self) -> str:
        address = self._email_from or "noreply@localhost"
        if self._email_from_name:
            return f"{self._email_from_name} <{address}>"
        return address

    def validate_config(self) -> None:
        """Warn once when verification is required but email cannot be sent."""
        if self._config_warned:
            return
        if self._require_verification and not self.enabled:
            self._config_warned = True
            logger.warning(
                "Email verification is required but email is not configured",
                extra={
                    "meta": {
                        "hasApiKey": bool(self._api_key),
                        "hasEmailFrom": bool(self._email_from),
                        "env": self._env,
                    }
                },
            )

    def send_email(
        self,
        *,
        to: Union[str, Sequence[str]],
        subject: str,
        html: str,
        sender: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> EmailResult:
        recipients: List[str] = [to] if isinstance(to, str) else list(to)

        if not self.enabled:
            ts = int(time.time() * 1000)
            if self._env == "production":
                logger.error(
                    "Email system not configured",
                    extra={"meta": {"to": recipients, "subject": subject}},
                )
                raise EmailError("Email system not configured")
            mock_id = f"mock-test-{ts}" if self._env == "test" else f"mock-{ts}"
            logger.debug(
                "Email not configured, returning mock result",
                extra={"meta": {"to": recipients, "subject": subject, "id": mock_id}},
            )
            return EmailResult(success=True, status="disabled", id=mock_id)

        payload = {
            "from": sender or self.default_sender,
            "to": recipients,
            "subject": subject,
            "html": html,
        }
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            resp = self._http.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            logger.error("Email send failed", extra={"error": e, "meta": {"to": recipients, "subject": subject}})
            return EmailResult(success=False, status="failed", error=str(e))

        if resp.status_code >= 400:
            try:
                message = (resp.json() or {}).get("message") or resp.text
            except ValueError:
                message = resp.text
            logger.error(
                "Email provider rejected message",
                extra={"meta": {"to": recipients, "subject": subject, "status": resp.status_code, "error": message}},
            )
            return EmailResult(success=False, status="failed", error=message or f"HTTP {resp.status_code}")

        try:
            email_id = (resp.json() or {}).get("id")
        except ValueError:
            email_id = None
        logger.info("Email sent", extra={"meta": {"to": recipients, "subject": subject, "id": email_id}})
        return EmailResult(success=True, status="sent", id=email_id)

from __future__ import annotations

import asyncio
import email.utils
import logging
import os
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Protocol


logger = logging.getLogger("automation.mailer")


def env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


class DigestMailer(Protocol):
    async def send(self, recipient: str, subject: str, body: str) -> None: ...


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    user: str
    password: str
    sender: str
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "SmtpSettings":
        user = env("SMTP_USER")
        try:
            port = int(env("SMTP_PORT", "587"))
        except ValueError:
            port = 587
        return cls(
            host=env("SMTP_HOST"),
            port=port,
            user=user,
            password=env("SMTP_PASS"),
            sender=env("SMTP_FROM", user),
        )

    def missing(self) -> list[str]:
        pairs = [("SMTP_HOST", self.host), ("SMTP_USER", self.user), ("SMTP_PASS", self.password)]
        return [k for k, v in pairs if not v]


class SmtpDigestMailer:
    """Plain-text digest delivery over STARTTLS."""

    def __init__(self, settings: SmtpSettings) -> None:
        self.settings = settings

    def _send_sync(self, recipient: str, subject: str, body: str) -> None:
        missing = self.settings.missing()
        if missing:
            raise RuntimeError(f"Missing required SMTP settings: {', '.join(missing)}")
        msg = MIMEText(body, _charset="utf-8")
        msg["From"] = self.settings.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Date"] = email.utils.formatdate(localtime=True)

        context = ssl.create_default_context()
        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds) as server:
            server.starttls(context=context)
            server.login(self.settings.user, self.settings.password)
            server.sendmail(self.settings.sender, [recipient], msg.as_string())

    async def send(self, recipient: str, subject: str, body: str) -> None:
        await asyncio.to_thread(self._send_sync, recipient, subject, body)
        logger.info("digest_mail_sent to=%s subject=%s", recipient, subject)

"""
SMTP email gateway for alert notifications.

Handles:
  - SMTP connection with TLS
  - MIME multipart construction (HTML + plaintext fallback)
  - Credential management (env vars > config file)
"""
import os
import re
import ssl
import smtplib
import logging
from contextlib import contextmanager
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

logger = logging.getLogger("alertmon.notifications.email")

_TAG_RE = re.compile(r"<[^>]+>")


class EmailSender:
    """
    SMTP email sender.

    Credential resolution order:
      1. Environment variables: ALERTMON_SMTP_USER, ALERTMON_SMTP_PASS
      2. Config file: config.email.smtp_username, config.email.smtp_password
    """

    def __init__(self, config: dict):
        email_config = config.get("email", {})
        self.smtp_host = email_config.get("smtp_host", "")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.timeout = email_config.get("timeout", 30)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "Equipment Alert Monitor")

        self.username = os.environ.get(
            "ALERTMON_SMTP_USER",
            email_config.get("smtp_username", ""),
        )
        self.password = os.environ.get(
            "ALERTMON_SMTP_PASS",
            email_config.get("smtp_password", ""),
        )

    def is_configured(self) -> bool:
        """Check if all required SMTP fields are present."""
        return all([self.smtp_host, self.from_address, self.username, self.password])

    def deliver(self, recipients: list, subject: str, html_body: str) -> bool:
        """Send one HTML email to all recipients. Returns True on success."""
        if not self.is_configured():
            logger.warning("Email not configured - skipping alert email")
            return False
        if not recipients:
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(_TAG_RE.sub("", html_body).strip(), "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        return self._send(msg, recipients)

    @contextmanager
    def _session(self, timeout=None):
        """Authenticated SMTP session, upgraded to TLS when configured."""
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout or self.timeout) as server:
            server.ehlo()
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            server.login(self.username, self.password)
            yield server

    def test_connection(self) -> dict:
        """Log in without sending anything."""
        try:
            with self._session(timeout=10) as server:
                code, _ = server.noop()
            return {"status": "ok", "message": f"SMTP login to {self.smtp_host} succeeded", "code": code}
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except (smtplib.SMTPException, OSError) as e:
            return {"status": "error", "message": f"{type(e).__name__}: {e}"}

    def _send(self, msg: MIMEMultipart, recipients: list) -> bool:
        try:
            with self._session() as server:
                refused = server.send_message(msg, to_addrs=recipients)
        except smtplib.SMTPAuthenticationError:
            logger.error(f"SMTP login to {self.smtp_host} rejected for {self.username}")
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"All recipients refused: {', '.join(e.recipients)}")
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Alert email to {len(recipients)} recipients failed: {e}")
            return False

        if refused:
            logger.warning(f"Some recipients refused: {', '.join(refused)}")
        logger.info(f"Alert email sent to {len(recipients) - len(refused or {})} recipients: {msg['Subject']}")
        return True

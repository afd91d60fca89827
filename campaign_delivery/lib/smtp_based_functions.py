import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import email.utils
import logging
import threading
import time
from typing import Dict, Optional

from ..config import DeliverySettings

logger = logging.getLogger(__name__)


class SmtpTransport:
    """
    Sends one HTML message per call over a reused SMTP connection.
    Calls are throttled to rate_per_second; failures raise so the caller's
    retry policy can decide what to do.
    """

    def __init__(self, host: str, port: int, user: str, password: str, from_address: str,
                 from_name: Optional[str] = None, rate_per_second: float = 5.0, timeout: int = 30):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.from_address = from_address
        self.from_name = from_name
        self.rate_per_second = rate_per_second
        self.timeout = timeout
        self.emails_sent = 0

        self._server: Optional[smtplib.SMTP] = None
        self._last_sent = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> 'SmtpTransport':
        settings.require_smtp()
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_address=settings.from_address,
            from_name=settings.from_name,
            rate_per_second=settings.smtp_rate_per_second,
            timeout=settings.smtp_timeout_seconds,
        )

    def _rate_limit(self):
        with self._lock:
            now = time.monotonic()
            interval = 1.0 / max(1e-6, self.rate_per_second)
            elapsed = now - self._last_sent
            if elapsed < interval:
                time.sleep(interval - elapsed)
            self._last_sent = time.monotonic()

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            server.ehlo()
            if server.has_extn('starttls'):
                server.starttls()
                server.ehlo()
        server.login(self.user, self.password)
        logger.debug(f"Connected to SMTP server {self.host}:{self.port}")
        return server

    def _build_message(self, to: str, subject: str, html: str, headers: Optional[Dict[str, str]]) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['From'] = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        msg['To'] = to
        msg['Subject'] = subject
        msg['Date'] = email.utils.formatdate(localtime=True)
        msg['Message-ID'] = email.utils.make_msgid(domain=self.from_address.split('@')[-1])

        if headers:
            for key, value in headers.items():
                if value:  # Only add if value exists
                    msg[key] = value

        msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    def send(self, to: str, subject: str, html: str, headers: Optional[Dict[str, str]] = None) -> str:
        """Send one message, returning its Message-ID"""
        msg = self._build_message(to, subject, html, headers)
        self._rate_limit()
        try:
            if self._server is None:
                self._server = self._connect()
            try:
                self._server.send_message(msg)
            except smtplib.SMTPServerDisconnected:
                # pooled connection went stale between messages
                self._server = self._connect()
                self._server.send_message(msg)
        except Exception as e:
            logger.error(f"Error sending email to {to}: {str(e)}")
            self.close()
            raise
        self.emails_sent += 1
        return msg['Message-ID']

    def close(self):
        if self._server is None:
            return
        try:
            self._server.quit()
        except Exception as e:
            logger.debug(f"Ignoring error while closing SMTP connection: {str(e)}")
        finally:
            self._server = None

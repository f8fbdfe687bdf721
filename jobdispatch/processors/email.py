# jobdispatch/processors/email.py
"""Delivery of ``email-dispatch`` jobs over SMTP."""
import logging
import queue
import smtplib
import ssl
import threading
from email.message import EmailMessage
from typing import Any, Dict, Optional

from jobdispatch.common.job import Job
from jobdispatch.config import Settings
from jobdispatch.queues import EmailPayload

logger = logging.getLogger(__name__)

SMTPS_PORT = 465


class SmtpTransport:
    """
    Shared, lazily connected pool of SMTP sessions.

    Port 465 uses implicit TLS; any other port upgrades with STARTTLS when
    the server offers it. Login happens only when both credentials are set.
    Safe to use from every worker slot at once.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        pool_size: int = 5,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self._idle: "queue.LifoQueue[smtplib.SMTP]" = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(pool_size)
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, pool_size: int = 5) -> "SmtpTransport":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            pool_size=pool_size,
        )

    @property
    def secure(self) -> bool:
        return self.port == SMTPS_PORT

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.secure:
            connection = smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout, context=context
            )
        else:
            connection = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            connection.ehlo()
            if connection.has_extn("starttls"):
                connection.starttls(context=context)
                connection.ehlo()
        if self.username and self.password:
            connection.login(self.username, self.password)
        logger.debug(f"Opened SMTP connection to {self.host}:{self.port}")
        return connection

    def _checkout(self) -> smtplib.SMTP:
        try:
            connection = self._idle.get_nowait()
        except queue.Empty:
            return self._connect()
        try:
            connection.noop()
            return connection
        except smtplib.SMTPException:
            self._discard(connection)
            return self._connect()

    @staticmethod
    def _discard(connection: smtplib.SMTP) -> None:
        try:
            connection.quit()
        except (smtplib.SMTPException, OSError):
            connection.close()

    def send(self, message: EmailMessage) -> Dict[str, Any]:
        """Sends one message. Returns smtplib's refused-recipients dict."""
        if self._closed:
            raise RuntimeError("SMTP transport is closed")
        with self._slots:
            connection = self._checkout()
            try:
                refused = connection.send_message(message)
            except (smtplib.SMTPException, OSError):
                self._discard(connection)
                raise
            self._idle.put(connection)
            return refused

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                connection = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(connection)

    def __enter__(self) -> "SmtpTransport":
        self._closed = False
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_message(payload: EmailPayload, default_sender: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = payload.from_ or default_sender
    message["To"] = payload.to
    message["Subject"] = payload.subject
    if payload.text:
        message.set_content(payload.text)
        message.add_alternative(payload.html, subtype="html")
    else:
        message.set_content(payload.html, subtype="html")
    return message


class EmailDispatchProcessor:
    """Processor for the ``email-dispatch`` queue."""

    def __init__(self, transport: SmtpTransport, default_sender: str):
        self.transport = transport
        self.default_sender = default_sender

    def __call__(self, job: Job) -> Dict[str, Any]:
        payload = EmailPayload.model_validate(job.payload)
        logger.info(f"Sending email to {payload.to}: {payload.subject!r}")

        refused = self.transport.send(build_message(payload, self.default_sender))

        logger.info(f"Email sent to {payload.to}.")
        return {"to": payload.to, "refused": sorted(refused or {})}

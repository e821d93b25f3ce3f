"""
SMTP sending for composed messages.
"""

import asyncio
import logging
import smtplib
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, formataddr

from mailsync.exceptions import InvalidDataError, TransportUnavailableError
from mailsync.models import Account, ComposedMessage, EmailAddress
from settings import settings


@dataclass
class SentMessage:
    message_id: str
    date: datetime
    mime: MIMEMultipart


class SMTPSender:
    """Builds MIME messages and submits them over SMTP."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    async def send(self, account: Account, composed: ComposedMessage) -> SentMessage:
        if not account.smtp_host:
            raise InvalidDataError(f"No SMTP host configured for {account.email}", account_id=account.id)

        recipients = [address.email for address in (*composed.to, *composed.cc, *composed.bcc)]
        if not recipients:
            raise InvalidDataError("Message has no recipients", account_id=account.id)

        # Second precision so the Date header and the local sent record agree exactly.
        date = datetime.now(UTC).replace(microsecond=0)
        mime = self.create_message(account, composed, date)
        try:
            await asyncio.to_thread(self._submit, account, recipients, mime.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise TransportUnavailableError(f"Failed to send email: {e}", account_id=account.id) from e

        message_id = mime["Message-ID"]
        self._logger.info(f"Email sent successfully: {message_id}")
        return SentMessage(message_id=message_id, date=date, mime=mime)

    def _submit(self, account: Account, recipients: list[str], text: str) -> None:
        with smtplib.SMTP_SSL(account.smtp_host, account.smtp_port, timeout=settings.smtp.timeout) as server:
            server.login(account.email, account.password.get_secret_value())
            server.sendmail(account.email, recipients, text)

    @staticmethod
    def create_message(account: Account, composed: ComposedMessage, date: datetime) -> MIMEMultipart:
        message = MIMEMultipart("mixed")
        message["Subject"] = composed.subject
        message["Date"] = format_datetime(date)
        message["From"] = formataddr((account.email, account.email))

        if composed.to:
            message["To"] = _format_addresses(composed.to)
        if composed.cc:
            message["Cc"] = _format_addresses(composed.cc)
        # Bcc recipients are only passed to the SMTP envelope.

        if composed.in_reply_to:
            message["In-Reply-To"] = composed.in_reply_to
        if composed.references:
            message["References"] = " ".join(composed.references)

        domain = account.email.split("@")[-1]
        message["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"

        text_container = MIMEMultipart("alternative")
        text_container.attach(MIMEText(composed.body, "plain", "utf-8"))
        if composed.html_body:
            text_container.attach(MIMEText(composed.html_body, "html", "utf-8"))
        message.attach(text_container)

        for attachment in composed.attachments:
            part = MIMEApplication(attachment.data, name=attachment.filename)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            if attachment.content_type:
                part.set_type(attachment.content_type)
            message.attach(part)

        return message


def _format_addresses(addresses: list[EmailAddress]) -> str:
    return ", ".join(formataddr((address.name, address.email)) for address in addresses)

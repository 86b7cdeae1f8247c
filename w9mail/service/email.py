from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import getaddresses
from typing import List, Optional, Sequence

from w9mail.logging import get_logger, redact_email
from w9mail.service.senders import SenderCredentials

logger = get_logger(__name__)


def split_addresses(value: Optional[str]) -> List[str]:
    """Parse a comma-separated address list into bare addresses."""
    if not value:
        return []
    return [addr for _, addr in getaddresses([value]) if addr]


class EmailService:
    """SMTP relay that logs in with the sender's mailbox credentials.

    Without an SMTP host the service runs in dev mode: messages are logged
    and reported as sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_use_tls = smtp_use_tls
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def _build_message(
        self,
        credentials: SenderCredentials,
        to: Sequence[str],
        subject: str,
        body: str,
        cc: Sequence[str],
        html: bool,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = credentials.header_from
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg.attach(MIMEText(body, "html" if html else "plain", "utf-8"))
        return msg

    def _deliver(
        self,
        credentials: SenderCredentials,
        to: List[str],
        subject: str,
        body: str,
        cc: List[str],
        bcc: List[str],
        html: bool,
    ) -> bool:
        recipients = to + cc + bcc
        if not recipients:
            logger.warning("email_no_recipients", subject=subject)
            return False

        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                sender=redact_email(credentials.header_from),
                to=[redact_email(addr) for addr in recipients],
                subject=subject,
                body_preview=body[:200],
            )
            return True

        try:
            msg = self._build_message(credentials, to, subject, body, cc, html)
            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
            )
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    server.login(credentials.auth_email, credentials.auth_password)
                    server.sendmail(credentials.header_from, recipients, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    server.login(credentials.auth_email, credentials.auth_password)
                    server.sendmail(credentials.header_from, recipients, msg.as_string())

            logger.info(
                "email_sent",
                sender=redact_email(credentials.header_from),
                recipients=len(recipients),
                subject=subject,
            )
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                user=redact_email(credentials.auth_email),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed", host=self.smtp_host, port=self.smtp_port, error=str(e)
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                refused=[redact_email(addr) for addr in getattr(e, "recipients", {})],
            )
            return False
        except smtplib.SMTPSenderRefused as e:
            logger.error(
                "email_sender_refused",
                sender=redact_email(credentials.header_from),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (MessageError, ValueError) as e:
            logger.error(
                "email_message_invalid",
                sender=redact_email(credentials.header_from),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error", host=self.smtp_host, port=self.smtp_port, error=str(e)
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                host=self.smtp_host,
                port=self.smtp_port,
                timeout=self.timeout,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_network_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    async def send(
        self,
        credentials: SenderCredentials,
        to: str | Sequence[str],
        subject: str,
        body: str,
        *,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        html: bool = False,
    ) -> bool:
        """Send one message; returns False on any delivery failure."""

        to_list = split_addresses(to) if isinstance(to, str) else list(to)
        return await asyncio.to_thread(
            self._deliver,
            credentials,
            to_list,
            subject,
            body,
            split_addresses(cc),
            split_addresses(bcc),
            html,
        )

import smtplib
import ssl
import email.utils
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from dotenv import load_dotenv
import os
import logging
from typing import Optional
import time
from dataclasses import dataclass
import re

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()


class MailSendError(Exception):
    """Email could not be delivered to the SMTP server"""


@dataclass
class EmailConfig:
    """Email configuration class"""

    # SMTP Configuration
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True

    # General settings
    timeout: int = 30
    max_retries: int = 3
    retry_delay: int = 2
    sender_name: Optional[str] = "OTP Verification"


class EmailSender:
    def __init__(self, config: Optional[EmailConfig] = None):
        self.email_user = os.getenv("EMAIL_USER")
        self.email_pass = os.getenv("EMAIL_PASS")
        self.config = config or EmailConfig()

        if not self.email_user or not self.email_pass:
            raise ValueError(
                "EMAIL_USER and EMAIL_PASS must be set in environment variables"
            )

    def send(self, to: str, subject: str, body: str, is_html: bool = False) -> str:
        """Send one email and return its Message-ID.

        Raises MailSendError if the message was not accepted by the server.
        """
        to = to.strip()
        if not self._is_valid_email(to):
            raise MailSendError(f"Invalid email address: {to}")

        msg = self._create_message(to, subject, body, is_html)
        self._send_with_retry(msg, [to])

        logger.info(f"✅ Email sent successfully to {to}")
        return msg["Message-ID"]

    def _create_message(self, to: str, subject: str, body: str, is_html: bool) -> MIMEMultipart:
        """Create email message with headers"""
        msg = MIMEMultipart("alternative")

        sender_name = self.config.sender_name
        msg["From"] = (
            formataddr((sender_name, self.email_user)) if sender_name else self.email_user
        )
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = email.utils.formatdate(localtime=True)
        msg["Message-ID"] = email.utils.make_msgid()

        mime_type = "html" if is_html else "plain"
        msg.attach(MIMEText(body, mime_type, "utf-8"))

        return msg

    def _send_with_retry(self, msg: MIMEMultipart, recipients):
        """Send email, retrying transient SMTP and network failures"""
        for attempt in range(1, self.config.max_retries + 1):
            try:
                context = ssl.create_default_context()
                with smtplib.SMTP(
                    self.config.smtp_server,
                    self.config.smtp_port,
                    timeout=self.config.timeout,
                ) as server:
                    if self.config.use_tls:
                        server.starttls(context=context)
                    server.login(self.email_user, self.email_pass)
                    server.send_message(msg, to_addrs=recipients)
                return
            except smtplib.SMTPAuthenticationError as e:
                logger.error(f"SMTP Authentication failed: {e}")
                raise MailSendError(f"SMTP authentication failed: {e}") from e
            except smtplib.SMTPRecipientsRefused as e:
                logger.error(f"Recipients refused: {e}")
                raise MailSendError(f"Recipients refused: {recipients}") from e
            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"Attempt {attempt} failed: {e}")
                if attempt < self.config.max_retries:
                    time.sleep(self.config.retry_delay)
                    continue
                logger.error(f"❌ Max retries reached. Email failed: {e}")
                raise MailSendError(
                    f"Failed to send email after {attempt} attempts: {e}"
                ) from e

        raise MailSendError("Email was not sent: max_retries must be at least 1")

    def _is_valid_email(self, address: str) -> bool:
        """Basic email validation"""
        pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
        return re.match(pattern, address) is not None

    def test_connection(self) -> bool:
        """Test SMTP connection"""
        try:
            with smtplib.SMTP(
                self.config.smtp_server, self.config.smtp_port, timeout=10
            ) as server:
                if self.config.use_tls:
                    server.starttls()
                server.login(self.email_user, self.email_pass)
            logger.info("✅ SMTP connection test successful")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ SMTP connection test failed: {e}")
            return False


def create_otp_email(otp: str, valid_minutes: int) -> str:
    """Create a styled HTML email for OTP verification"""
    return f"""
    <div style="font-family: 'Segoe UI', Tahoma, sans-serif; max-width: 600px; margin: auto; padding: 24px; border: 1px solid #e0e0e0; border-radius: 8px;">
        <h2 style="color: #2c3e50; border-bottom: 2px solid #3498db; padding-bottom: 10px;">OTP Verification</h2>
        <p style="font-size: 15px; color: #555;">Your OTP is:</p>

        <div style="background-color: #f2f6fc; padding: 16px; border: 2px dashed #3498db; border-radius: 6px; text-align: center; margin: 20px 0;">
            <span style="font-size: 28px; color: #2c3e50; font-weight: bold; letter-spacing: 4px;">{otp}</span>
        </div>

        <p style="font-size: 14px; color: #7f8c8d;">This OTP is valid for the next <strong>{valid_minutes} minutes</strong>.</p>
        <p style="font-size: 14px; color: #7f8c8d;">If you didn't request this verification, you can safely ignore this email.</p>
    </div>
    """

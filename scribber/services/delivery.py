import base64
import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from scribber.core import config
from scribber.core.errors import (
    ArchiveFailure,
    ConfigurationError,
    MailDeliveryFailure,
    SocialPostNotImplemented,
    ValidationFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_NAME = "story_images.zip"


# ---------- zip ----------
def build_zip(paths: Iterable[Path]) -> bytes:
    """Pack the given images into an in-memory deflate archive, one entry per basename."""
    buffer = io.BytesIO()
    count = 0
    try:
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in paths:
                path = Path(path)
                archive.write(path, arcname=path.name)
                count += 1
    except (OSError, zipfile.BadZipFile, ValueError) as e:
        logger.error("Archive error: %s", e)
        raise ArchiveFailure(str(e)) from e
    logger.info("Built zip with %d images (%d bytes)", count, buffer.tell())
    return buffer.getvalue()


def _slug(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (value or "").strip().lower()).strip("_")


def archive_name(era_or_culture: Optional[str] = None, story_or_character: Optional[str] = None) -> str:
    parts = [p for p in (_slug(era_or_culture), _slug(story_or_character)) if p]
    if not parts:
        return DEFAULT_ARCHIVE_NAME
    return f"{'_'.join(parts)[:80]}_story_images.zip"


# ---------- email ----------
def validate_recipient(email: Optional[str], domain: str = config.ALLOWED_EMAIL_DOMAIN) -> str:
    value = (email or "").strip()
    pattern = rf"^[A-Za-z0-9._%+\-]+@{re.escape(domain)}$"
    if not re.match(pattern, value, flags=re.IGNORECASE):
        raise ValidationFailure(f"Please provide a valid @{domain} address.")
    return value


class MailSender:
    def __init__(self, api_key: Optional[str], sender: Optional[str], client: Optional[SendGridAPIClient] = None):
        self.sender = sender
        if client is None and api_key:
            client = SendGridAPIClient(api_key)
        self.client = client

    def build_message(self, to: str, data: bytes, filename: str) -> Mail:
        message = Mail(
            from_email=self.sender,
            to_emails=to,
            subject="Your story images",
            html_content="<p>Your illustrated story pages are attached as a zip archive.</p>",
        )
        message.attachment = Attachment(
            FileContent(base64.b64encode(data).decode()),
            FileName(filename),
            FileType("application/zip"),
            Disposition("attachment"),
        )
        return message

    def send(self, to: str, data: bytes, filename: str) -> int:
        if self.client is None or not self.sender:
            raise ConfigurationError("SENDGRID_API_KEY and MAIL_FROM must be set to send email.")
        message = self.build_message(to, data, filename)
        try:
            response = self.client.send(message)
        except SendGridHTTPError as e:
            logger.error("SendGrid rejected mail to %s: %s %s", to, getattr(e, "status_code", "?"), getattr(e, "body", e))
            raise MailDeliveryFailure(f"SendGrid error: {e}") from e
        except Exception as e:
            logger.error("Sending mail to %s failed: %r", to, e)
            raise MailDeliveryFailure(f"Mail relay unreachable: {e}") from e
        status = getattr(response, "status_code", 0)
        if not 200 <= status < 300:
            logger.error("SendGrid returned %s for mail to %s", status, to)
            raise MailDeliveryFailure(f"SendGrid returned status {status}")
        logger.info("Sent %s (%d bytes) to %s", filename, len(data), to)
        return status


_mail_sender: Optional[MailSender] = None


def get_mail_sender() -> MailSender:
    global _mail_sender
    if _mail_sender is None:
        _mail_sender = MailSender(config.SENDGRID_API_KEY, config.MAIL_FROM)
    return _mail_sender


# ---------- instagram ----------
def post_to_instagram(image_paths, caption: str, settings: Optional[Dict[str, Any]] = None):
    # Needs every image uploaded to a public url first, then one Graph API media
    # container per image and a carousel container referencing them.
    raise SocialPostNotImplemented(
        "Instagram posting requires public image URLs and Meta Graph API setup."
    )

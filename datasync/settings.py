"""Service settings, request header helpers and notification mails."""

from __future__ import annotations

import logging
import re
import smtplib
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional

from datasync.hashing import HashType

logger = logging.getLogger(__name__)

DEFAULT_USER_HEADER = "Ajp_uid"
SESSION_ID_HEADER = "Ajp_shib-Session-Id"

DEFAULT_SUBJECT_ON_SUCCESS = "[rdm-integration] Done uploading files to dataset %v"
DEFAULT_CONTENT_ON_SUCCESS = (
    "All files are updated sucessfuly. You can review the content and edit the metadata "
    'in the dataset: <a href="%v">%v</a>.'
)
DEFAULT_SUBJECT_ON_ERROR = "[rdm-integration] Failed to upload all files to dataset %v"
DEFAULT_CONTENT_ON_ERROR = (
    'Updating files in dataset <a href="%v">%v</a> has failed. Please try again later. '
    "If the error persists, contact the helpdesk."
)


@dataclass
class S3Config:
    """Where direct uploads to S3 storage go."""

    aws_bucket: str = ""
    aws_region: str = ""
    aws_endpoint: str = ""
    aws_pathstyle: bool = False


@dataclass
class SmtpConfig:
    """Mail server used for job notifications."""

    host: str = ""
    port: str = "25"
    sender: str = ""


@dataclass
class MailConfig:
    """Templates overriding the default notification texts; ``%v`` marks a value."""

    subject_on_success: str = ""
    content_on_success: str = ""
    subject_on_error: str = ""
    content_on_error: str = ""


@dataclass
class Settings:
    """Settings of the synchronisation service."""

    dataverse_server: str = ""
    dataverse_external_url: str = ""
    root_dataverse_id: str = ""
    default_hash: str = HashType.MD5.value
    default_driver: str = ""
    path_to_files_dir: str = ""
    user_header_name: str = ""
    my_data_role_ids: List[int] = field(default_factory=list)
    max_dv_object_pages: int = 10
    api_key: str = ""
    unblock_key: str = ""
    smtp_password: str = ""
    s3: S3Config = field(default_factory=S3Config)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    mail: MailConfig = field(default_factory=MailConfig)


_VERB = re.compile(r"%[vs%]")


def _fill(template: str, *values: object) -> str:
    """Substitute ``%v``/``%s`` placeholders in order; ``%%`` is a literal percent."""
    remaining = iter(values)

    def replace(match: "re.Match[str]") -> str:
        if match.group(0) == "%%":
            return "%"
        try:
            return str(next(remaining))
        except StopIteration:
            return f"%!{match.group(0)[1]}(MISSING)"

    return _VERB.sub(replace, template)


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    return next((value for key, value in headers.items() if key.lower() == wanted), "")


def user_from_headers(headers: Mapping[str, str], settings: Settings) -> str:
    """Return the authenticated user named in the request headers, or ``""``."""
    return _header(headers, settings.user_header_name or DEFAULT_USER_HEADER)


def session_id_from_headers(headers: Mapping[str, str]) -> str:
    """Return the session id from the headers, or a freshly generated one."""
    return _header(headers, SESSION_ID_HEADER) or str(uuid.uuid4())


def send_mail(message: str, recipients: Iterable[str], settings: Settings) -> bool:
    """Send a raw mail message; return False when no mail server is configured."""
    smtp = settings.smtp
    if not smtp.host:
        logger.info("smtp is not configured: message could not be sent: %s", message)
        return False
    with smtplib.SMTP(smtp.host, int(smtp.port or 25)) as server:
        server.ehlo()
        if server.has_extn("starttls"):
            server.starttls()
            server.ehlo()
        if settings.smtp_password:
            server.login(smtp.sender, settings.smtp_password)
        server.sendmail(smtp.sender, list(recipients), message.encode())
    return True


def _template(custom: str, default: str) -> str:
    return custom or default


def subject_on_success(persistent_id: str, settings: Settings) -> str:
    template = _template(settings.mail.subject_on_success, DEFAULT_SUBJECT_ON_SUCCESS)
    return _fill(template, persistent_id)


def content_on_success(persistent_id: str, repo_url: str, settings: Settings) -> str:
    template = _template(settings.mail.content_on_success, DEFAULT_CONTENT_ON_SUCCESS)
    return _fill(template, repo_url, persistent_id)


def subject_on_error(persistent_id: str, settings: Settings) -> str:
    template = _template(settings.mail.subject_on_error, DEFAULT_SUBJECT_ON_ERROR)
    return _fill(template, persistent_id)


def content_on_error(persistent_id: str, repo_url: str, settings: Settings) -> str:
    template = _template(settings.mail.content_on_error, DEFAULT_CONTENT_ON_ERROR)
    return _fill(template, repo_url, persistent_id)


def _optional(value: Optional[str]) -> str:
    return value or ""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import Config, SmtpConfig
from .utils import log_event

BASE_DIR = Path(__file__).resolve().parent
EMAIL_TEMPLATES = Environment(
    loader=FileSystemLoader(str(BASE_DIR / "templates")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

logger = logging.getLogger("vulnz.mailer")


def render_email(template_name: str, context: dict[str, object]) -> tuple[str, str]:
    """Render the html and plain text bodies of an email template pair."""
    html = EMAIL_TEMPLATES.get_template(f"email/{template_name}.html").render(**context)
    text = EMAIL_TEMPLATES.get_template(f"email/{template_name}.txt").render(**context)
    return html, text


class Mailer:
    def __init__(self, smtp: SmtpConfig) -> None:
        self.smtp = smtp

    def send(self, to: str, subject: str, html: str, text: str) -> None:
        message = EmailMessage()
        message["From"] = self.smtp.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        client_cls = smtplib.SMTP_SSL if self.smtp.secure else smtplib.SMTP
        with client_cls(self.smtp.host, self.smtp.port, timeout=30) as client:
            if self.smtp.user:
                client.login(self.smtp.user, self.smtp.password)
            client.send_message(message)
        log_event(logger, logging.INFO, "email_sent", to=to, subject=subject)


def send_password_reset_email(mailer: Mailer, cfg: Config, to: str, token: str) -> None:
    reset_link = f"{cfg.app.base_url}/ui/reset-password?token={token}"
    html, text = render_email(
        "password_reset", {"app_name": cfg.app.name, "reset_link": reset_link}
    )
    mailer.send(to, "Password Reset Request", html, text)

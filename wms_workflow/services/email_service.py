"""
Email Service.

Templated outbound mail for the ``send_email`` rule action.  Every recipient
gets an EmailLog row; without ``MAIL_SERVER`` the row is marked sent and the
message is only logged, so development and tests never open SMTP sockets.

Configuration (app.config):
    MAIL_SERVER          SMTP host (unset: log-only)
    MAIL_PORT            SMTP port (587)
    MAIL_USE_TLS         STARTTLS before login (true)
    MAIL_USERNAME        SMTP username
    MAIL_PASSWORD        SMTP password
    MAIL_DEFAULT_SENDER  From address
"""

from __future__ import annotations

import html
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from flask import current_app

from wms_workflow.models import db
from wms_workflow.models.directory import Employee
from wms_workflow.models.scheduling import EmailLog

logger = logging.getLogger(__name__)

ROLE_PREFIX = "role:"


class _Placeholders(dict):
    """Leaves unknown ``{name}`` placeholders in place."""

    def __missing__(self, key):
        return "{" + key + "}"


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    heading: str
    body: str

    def render(self, variables: dict[str, Any]) -> tuple[str, str, str]:
        """Return ``(subject, plain_text, html)`` with values HTML-escaped in the HTML part."""
        plain = _Placeholders({k: "" if v is None else str(v) for k, v in variables.items()})
        escaped = _Placeholders({k: html.escape(v) for k, v in plain.items()})
        subject = self.subject.format_map(plain)
        text = f"{self.heading.format_map(plain)}\n\n{self.body.format_map(plain)}\n"
        markup = (
            '<div style="font-family: Arial, sans-serif; max-width: 600px;">'
            f'<h2 style="font-size: 18px;">{self.heading.format_map(escaped)}</h2>'
            f'<p style="color: #475569;">{self.body.format_map(escaped)}</p>'
            '<p style="color: #94a3b8; font-size: 12px;">Sent by the warehouse workflow engine</p>'
            "</div>"
        )
        return subject, text, markup


TEMPLATES: dict[str, EmailTemplate] = {
    "document_status_changed": EmailTemplate(
        subject="[WMS] {entityType} {entityId} is now {to}",
        heading="Document status changed",
        body="{entityType} {entityId} moved from {from} to {to}.",
    ),
    "approval_requested": EmailTemplate(
        subject="[WMS] Approval required: {entityType} {entityId}",
        heading="Approval required",
        body="{entityType} {entityId} is waiting for approval at level {level}. SLA due {slaDueDate}.",
    ),
    "approval_decided": EmailTemplate(
        subject="[WMS] {entityType} {entityId} {status}",
        heading="Approval decision",
        body="{entityType} {entityId} was {status}.",
    ),
    "sla_breached": EmailTemplate(
        subject="[WMS] SLA breached: {documentType} {documentId}",
        heading="Approval SLA breached",
        body="The approval for {documentType} {documentId} at level {level} was due {slaDueDate}.",
    ),
    "low_stock_alert": EmailTemplate(
        subject="[WMS] Low stock: {itemCode}",
        heading="Stock below minimum",
        body="{itemCode} in warehouse {warehouseId} is down to {quantity} (minimum {minLevel}).",
    ),
}


class EmailService:
    """Stateless helpers; all state is in EmailLog."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(code: str) -> EmailTemplate | None:
        return TEMPLATES.get(code)

    @staticmethod
    def template_names() -> list[str]:
        return sorted(TEMPLATES)

    @staticmethod
    def resolve_recipients(to: str) -> list[str]:
        """An address, or ``role:<system_role>`` for every active holder with an email."""
        if not to.startswith(ROLE_PREFIX):
            return [to]
        role = to[len(ROLE_PREFIX):]
        holders = Employee.query.filter_by(system_role=role, is_active=True).order_by(Employee.id).all()
        return [e.email for e in holders if e.email]

    @classmethod
    def send_from_template(cls, *, to: str, template_code: str, variables: dict[str, Any],
                           rule_id: int | None = None, event_id: str | None = None,
                           entity_type: str | None = None, entity_id: str | None = None) -> list[EmailLog]:
        """
        Render ``template_code`` once and deliver it to every resolved recipient.

        Raises:
            ValueError: unknown template code.
        """
        template = cls.get_template(template_code)
        if template is None:
            raise ValueError(f"Email template not found: {template_code}")
        subject, text, markup = template.render(variables)

        logs = []
        for address in cls.resolve_recipients(to):
            log = EmailLog(recipient_email=address, subject=subject[:500], template_code=template_code,
                           rule_id=rule_id, event_id=event_id, entity_type=entity_type,
                           entity_id=entity_id)
            db.session.add(log)
            cls._deliver(log, text, markup)
            logs.append(log)
        db.session.commit()
        if not logs:
            logger.warning("Email %s to %s resolved no recipients", template_code, to,
                           extra={"rule_id": rule_id, "event_id": event_id})
        return logs

    @classmethod
    def _deliver(cls, log: EmailLog, text: str, markup: str) -> None:
        if not cls.is_configured():
            log.mark("sent")
            logger.info("Email (log only) to=%s subject=%r", log.recipient_email, log.subject,
                        extra={"rule_id": log.rule_id, "event_id": log.event_id})
            return
        try:
            cls._send_smtp(log.recipient_email, log.subject, text, markup)
        except (smtplib.SMTPException, OSError) as exc:
            log.mark("failed", str(exc))
            logger.error("Email to %s failed: %s", log.recipient_email, exc,
                         extra={"rule_id": log.rule_id, "event_id": log.event_id})
        else:
            log.mark("sent")
            logger.info("Email sent to=%s subject=%r", log.recipient_email, log.subject,
                        extra={"rule_id": log.rule_id, "event_id": log.event_id})

    @staticmethod
    def _send_smtp(to_email: str, subject: str, text: str, markup: str) -> None:
        cfg = current_app.config
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{cfg['MAIL_SERVER']}"
        msg["To"] = to_email
        msg.set_content(text)
        msg.add_alternative(markup, subtype="html")

        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(msg)

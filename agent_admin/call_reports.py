"""End-of-call reports: persist the summary and email it to the business."""
import logging
import smtplib
import ssl
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from agent_admin import config

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK_CHARS = 500


def _valid_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = value.strip()
    return cleaned if "@" in cleaned and " " not in cleaned else None


def extract_report(message: Dict[str, Any]) -> Dict[str, Any]:
    """Pull the fields we keep out of a VAPI end-of-call-report message."""
    call = message.get("call") or {}
    analysis = message.get("analysis") or {}
    artifact = message.get("artifact") or {}
    customer = call.get("customer") or message.get("customer") or {}
    structured = analysis.get("structuredData") or {}

    transcript = message.get("transcript") or artifact.get("transcript") or ""
    summary = analysis.get("summary") or transcript[:SUMMARY_FALLBACK_CHARS]

    return {
        "call_id": call.get("id") or f"call-{uuid.uuid4().hex[:12]}",
        "assistant_id": call.get("assistantId") or (message.get("assistant") or {}).get("id"),
        "summary": summary,
        "transcript": transcript or None,
        "customer_name": structured.get("customerName") or customer.get("name"),
        "customer_email": _valid_email(structured.get("customerEmail") or customer.get("email")),
        "customer_phone": structured.get("customerPhone") or customer.get("number"),
    }


class CallReportService:
    """Handles end-of-call reports for whichever agent took the call."""

    def __init__(
        self,
        store,
        smtp_settings: Optional[Dict[str, Any]] = None,
        notify_to: Optional[str] = None
    ):
        self.store = store
        self.smtp_settings = smtp_settings if smtp_settings is not None else config.get_smtp_settings()
        self.notify_to = notify_to or config.get_notification_email()

    def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        report = extract_report(message)

        business_name = "your business"
        agent = None
        if report["assistant_id"]:
            agent = self.store.find_agent_by_assistant_id(report["assistant_id"])
        if agent is not None:
            business = agent.config
            business_name = business.business_name
            if business.vapi:
                known = business.vapi.known_user()
                report["customer_name"] = report["customer_name"] or known["name"]
                report["customer_email"] = report["customer_email"] or _valid_email(known["email"])
                report["customer_phone"] = report["customer_phone"] or known["phone"]

        email_status = self._email_summary(report, business_name)

        self.store.save_call_summary(
            report["call_id"],
            org_id=agent.org_id if agent else None,
            agent_id=agent.agent_id if agent else None,
            assistant_id=report["assistant_id"],
            summary=report["summary"],
            transcript=report["transcript"],
            customer_name=report["customer_name"],
            customer_email=report["customer_email"],
            customer_phone=report["customer_phone"],
            email_status=email_status,
        )
        logger.info(f"Stored call summary {report['call_id']} (email {email_status})")
        return {"received": True, "callId": report["call_id"], "emailStatus": email_status}

    def _email_summary(self, report: Dict[str, Any], business_name: str) -> str:
        """Send the summary; returns sent, failed or skipped."""
        if not self.smtp_settings or not self.notify_to:
            return "skipped"

        settings = self.smtp_settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"Call summary - {business_name}"
        msg["From"] = settings["from_address"]
        msg["To"] = self.notify_to
        recipients = [self.notify_to]
        if report["customer_email"]:
            msg["Cc"] = report["customer_email"]
            recipients.append(report["customer_email"])

        lines = [
            f"Call ID: {report['call_id']}",
            f"Customer: {report['customer_name'] or 'Unknown'}",
            f"Phone: {report['customer_phone'] or 'N/A'}",
            f"Email: {report['customer_email'] or 'N/A'}",
            "",
            "Summary:",
            report["summary"] or "(no summary)",
        ]
        msg.attach(MIMEText("\n".join(lines), "plain"))

        try:
            implicit_tls = settings["port"] == 465
            if implicit_tls:
                server = smtplib.SMTP_SSL(
                    settings["host"], settings["port"], context=ssl.create_default_context(), timeout=30
                )
            else:
                server = smtplib.SMTP(settings["host"], settings["port"], timeout=30)
            with server:
                if not implicit_tls:
                    server.starttls(context=ssl.create_default_context())
                if settings.get("username"):
                    server.login(settings["username"], settings["password"])
                server.sendmail(
                    settings["from_address"].split("<")[-1].rstrip(">"), recipients, msg.as_string()
                )
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Call summary email failed for {report['call_id']}: {e}")
            return "failed"

        logger.info(f"Call summary email sent for {report['call_id']}")
        return "sent"

"""
Email Service using Resend
Provides email functionality using MJML templates for responsive design
"""

import asyncio
import logging
from typing import Optional, Union

import resend
from mjml import mjml_to_html

from .config import EMAIL_FROM_ADDRESS, RESEND_API_KEY
from .email_templates import contribution_value_set_template

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


class EmailDeliveryError(Exception):
    pass


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
        # mjml_to_html returns a dict-like with 'html' and 'errors' keys
        if isinstance(result, dict):
            if result.get("errors"):
                logger.warning(f"MJML compilation warnings: {result['errors']}")
            return result.get("html", "")
        html = getattr(result, "html", None)
        return html if html is not None else str(result)
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise EmailDeliveryError(f"Failed to compile MJML template: {str(e)}") from e


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    mjml_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        mjml_content: MJML template content (will be compiled to HTML)
        from_address: Optional custom from address

    Returns:
        Send response dict
    """
    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise EmailDeliveryError("Email service not configured")

    html_content = compile_mjml_to_html(mjml_content)
    recipients = [to] if isinstance(to, str) else to

    try:
        logger.info(f"📧 Sending email via Resend to: {to}")
        # Resend SDK is synchronous; keep it off the event loop
        response = await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": from_address or EMAIL_FROM_ADDRESS,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            },
        )
        logger.info(f"✅ Email sent successfully via Resend: {response}")
        return response
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        raise EmailDeliveryError(f"Failed to send email: {str(e)}") from e


async def send_contribution_value_set_email(
    to: str,
    clinic_name: str,
    employer_name: str,
    employer_cnpj: str,
    contribution_type: str,
    competence: str,
    due_date: str,
    value_cents: int,
    invoice_url: Optional[str] = None,
) -> dict:
    """Tell the union manager that an employer priced a contribution"""
    mjml_content = contribution_value_set_template(
        clinic_name=clinic_name,
        employer_name=employer_name,
        employer_cnpj=employer_cnpj,
        contribution_type=contribution_type,
        competence=competence,
        due_date=due_date,
        value_cents=value_cents,
        invoice_url=invoice_url,
    )
    return await send_email(
        to=to,
        subject=f"Valor informado: {employer_name} - {competence}",
        mjml_content=mjml_content,
    )

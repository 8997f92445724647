import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from chairtime.core.config import settings

logger = logging.getLogger(__name__)

EMAIL_TEMPLATES = {
    "booking_confirmation": ("Appointment Confirmed", "your appointment is booked."),
    "reminder_24h": ("Appointment Tomorrow", "this is a reminder of your appointment tomorrow."),
    "reminder_2h": ("Appointment in 2 Hours", "your appointment starts in about two hours."),
    "cancellation_confirmed": ("Appointment Cancelled", "your appointment has been cancelled."),
}


def send_email_sync(to_email: str, subject: str, html_body: str) -> tuple[bool, str | None]:
    """Send email via SMTP (blocking). Run in a worker thread. Returns (sent, error)."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), not sending to %s", to_email)
        return False, "Email not configured"
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.notification_timeout_seconds) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.from_email, [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Failed to send email to %s: %s", to_email, e)
        return False, str(e)
    logger.info("Email sent to %s", to_email)
    return True, None


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def render_email(template_id: str, payload: dict) -> tuple[str, str]:
    """Subject and HTML body for an appointment notification."""
    try:
        heading, intro = EMAIL_TEMPLATES[template_id]
    except KeyError:
        raise ValueError(f"Unknown email template {template_id!r}") from None
    name = _html_escape(payload.get("client_name") or "there")
    shop_name = _html_escape(payload.get("shop_name") or settings.site_name)
    service_name = _html_escape(payload.get("service_name") or "")
    start_display = _html_escape(payload.get("start_display") or "")
    reference = _html_escape(payload.get("reference") or "")
    subject = f"{payload.get('shop_name') or settings.site_name} – {heading}"
    html = f"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{heading}</title>
</head>
<body style="margin:0;padding:0;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;background-color:#f3f4f6;">
  <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width:560px;margin:40px auto;background:#ffffff;border-radius:12px;">
    <tr>
      <td style="padding:32px;">
        <h1 style="margin:0 0 8px 0;font-size:22px;color:#111827;">{heading}</h1>
        <p style="margin:0 0 24px 0;font-size:15px;color:#6b7280;">Hi {name}, {intro}</p>
        <p style="margin:0 0 4px 0;font-size:16px;font-weight:600;color:#111827;">{service_name} at {shop_name}</p>
        <p style="margin:0 0 24px 0;font-size:16px;color:#111827;">{start_display}</p>
        <p style="margin:0;font-size:13px;color:#6b7280;">Booking reference: {reference}</p>
      </td>
    </tr>
  </table>
</body>
</html>
"""
    return subject, html

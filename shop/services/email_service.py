"""
Transactional email for orders.

Uses SMTP (Google Workspace by default) from a background thread so a slow
mail server never holds up a checkout or a webhook response. Sending is
skipped, with a warning, when MAIL_USERNAME / MAIL_PASSWORD are not set.

Order emails:
- paid order      -> customer confirmation + admin "new order"
- manual order    -> customer "awaiting payment" (bank transfer details)
                     + admin "pending payment"

Usage:
    from shop.services.email_service import send_email

    send_email(
        to="customer@example.com",
        subject="Hello",
        template="emails/order_confirmation.html",
        context={"order": order_dict},
    )
"""

import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

from shop.extensions import db
from shop.services.order_status import STATUS_LABELS

logger = logging.getLogger(__name__)


def _mark_email_sent(order_id):
    from shop.models.order import Order

    try:
        Order.query.filter_by(id=order_id).update({"email_sent": True})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Could not flag email_sent on order {order_id}: {e}")


def _send_smtp(app, msg, order_id=None):
    """Send an email via SMTP in a background thread (non-blocking)."""
    with app.app_context():
        host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        port = app.config.get("MAIL_SMTP_PORT", 587)
        username = app.config.get("MAIL_USERNAME")
        password = app.config.get("MAIL_PASSWORD")

        if not username or not password:
            logger.warning("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
            return False

        try:
            with smtplib.SMTP(host, port, timeout=30) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(username, password)
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
        except Exception as e:
            logger.error(f"Failed to send email to {msg['To']}: {e}")
            return False

        if order_id:
            _mark_email_sent(order_id)
        return True


def build_message(to, subject, template, context=None, reply_to=None):
    """Render ``template`` and wrap it in a MIME message."""
    app = current_app._get_current_object()
    context = context or {}

    from_name = app.config.get("MAIL_FROM_NAME", "Shop Orders")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    html_body = render_template(template, **context)

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)

    if reply_to:
        msg["Reply-To"] = reply_to

    msg.attach(MIMEText(html_body, "html"))
    return msg


def send_email(to, subject, template, context=None, reply_to=None, order_id=None):
    """
    Send a templated HTML email in the background.

    Args:
        to:        Recipient email address (str or list).
        subject:   Email subject line.
        template:  Path to Jinja2 HTML template (relative to templates/).
        context:   Dict of variables to pass to the template.
        reply_to:  Optional reply-to address.
        order_id:  When given, a successful send flags the order's email_sent.

    Returns the built message (handy for inspection in tests).
    """
    app = current_app._get_current_object()
    msg = build_message(to, subject, template, context, reply_to)

    # Send in background thread so the request doesn't block
    thread = threading.Thread(target=_send_smtp, args=(app, msg, order_id))
    thread.daemon = True
    thread.start()
    return msg


# ──────────────────────────────────────────────
# Order emails
# ──────────────────────────────────────────────

def _order_context(order):
    data = order.to_dict()
    metadata = data["metadata"]
    return {
        "order": data,
        "items": [
            {**item, "line_total": item["quantity"] * item["unit_amount"]}
            for item in data["items"]
        ],
        "shipping_address": metadata.get("shipping_address") or {},
        "billing_address": metadata.get("billing_address") or {},
        "discount": metadata.get("discount") or None,
        "status_labels": STATUS_LABELS,
        "currency": data["currency"].upper(),
    }


def _admin_recipient():
    return current_app.config.get("MAIL_ADMIN_TO")


def send_order_emails(order):
    """Customer confirmation + admin notification for a paid order."""
    context = _order_context(order)
    send_email(
        to=order.email,
        subject=f"Order confirmation — {order.id[:8].upper()}",
        template="emails/order_confirmation.html",
        context=context,
        order_id=order.id,
    )
    admin = _admin_recipient()
    if admin:
        send_email(
            to=admin,
            subject=f"New order from {order.name}",
            template="emails/admin_new_order.html",
            context=context,
            reply_to=order.email,
        )


def send_awaiting_payment_email(order):
    """Bank-transfer instructions for a manual order + admin pending notice."""
    context = _order_context(order)
    context.update(
        iban=current_app.config.get("BANK_TRANSFER_IBAN", ""),
        account_holder=current_app.config.get("BANK_TRANSFER_HOLDER", ""),
    )
    send_email(
        to=order.email,
        subject=f"Awaiting payment — order {order.id[:8].upper()}",
        template="emails/awaiting_payment.html",
        context=context,
        order_id=order.id,
    )
    admin = _admin_recipient()
    if admin:
        send_email(
            to=admin,
            subject=f"Pending payment: order from {order.name}",
            template="emails/admin_pending_payment.html",
            context=context,
            reply_to=order.email,
        )

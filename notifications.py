"""
Transactional email

Best-effort delivery over SMTP. Nothing in here raises: a failed or skipped
send is logged and reported as False. Routes schedule these coroutines as
background tasks so the response never waits on the mail server.
"""
import logging
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib
from jinja2 import DictLoader, Environment, select_autoescape

import config

logger = logging.getLogger("storefront.notifications")

_LAYOUT = """<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
{% block body %}{% endblock %}
<br><p>Best regards,<br>The Team</p>
</div>"""

TEMPLATES = {
    "layout.html": _LAYOUT,
    "welcome.html": """{% extends "layout.html" %}{% block body %}
<h2>Welcome to Our Platform, {{ name }}!</h2>
<p>Your account has been created with the email <strong>{{ email }}</strong>.</p>
<p>You can now log in and start exploring.</p>
{% endblock %}""",
    "password_reset.html": """{% extends "layout.html" %}{% block body %}
<h2>Password Reset Request</h2>
<p>Hi {{ name }},</p>
<p>We received a request to reset your password. Use the link below to proceed:</p>
<p><a href="{{ reset_link }}">Reset Password</a></p>
<p>This link will expire in {{ expires_minutes }} minutes.</p>
<p>If you didn't request a password reset, please ignore this email.</p>
{% endblock %}""",
    "password_changed.html": """{% extends "layout.html" %}{% block body %}
<h2>Password Changed Successfully</h2>
<p>Hi {{ name }},</p>
<p>Your password has been changed. If you didn't make this change, contact support immediately.</p>
{% endblock %}""",
    "order_confirmation.html": """{% extends "layout.html" %}{% block body %}
<h2>Order Confirmation</h2>
<p>Hi {{ name }},</p>
<p>Thank you for your order! <strong>Order ID:</strong> {{ order_id }}</p>
<table style="width: 100%; border-collapse: collapse;">
<tr><th align="left">Product</th><th>Quantity</th><th align="right">Price</th></tr>
{% for item in items %}<tr><td>{{ item.name }}</td><td align="center">{{ item.quantity }}</td><td align="right">${{ "%.2f"|format(item.price) }}</td></tr>
{% endfor %}</table>
<p style="font-size: 18px; font-weight: bold;">Total: ${{ "%.2f"|format(total_amount) }}</p>
<p>We will keep you updated on your order status.</p>
{% endblock %}""",
    "order_status.html": """{% extends "layout.html" %}{% block body %}
<h2>Order Status Update</h2>
<p>Hi {{ name }},</p>
<p><strong>Order ID:</strong> {{ order_id }}</p>
<p><strong>Status:</strong> {{ status|upper }}</p>
<p>{{ message }}</p>
{% if tracking_number %}<p><strong>Tracking Info:</strong> {{ tracking_number }}</p>{% endif %}
{% endblock %}""",
}

SUBJECTS = {
    "welcome": "Welcome to Our Platform!",
    "password_reset": "Password Reset Request",
    "password_changed": "Password Changed Successfully",
    "order_confirmation": "Order Confirmation - Order #{order_id}",
    "order_status": "Order Status Update - Order #{order_id}",
}

STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and is being prepared.",
    "shipped": "Your order has been shipped! You can track it using the information below.",
    "delivered": "Your order has been delivered. Thank you for your purchase!",
    "cancelled": "Your order has been cancelled. If you have any questions, please contact us.",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"]))


def is_configured() -> bool:
    return bool(config.EMAIL_USER and config.EMAIL_PASSWORD)


def render(kind: str, data: Dict[str, Any]) -> EmailMessage:
    if kind not in SUBJECTS:
        raise ValueError(f"Unknown notification kind: {kind}")
    html = env.get_template(f"{kind}.html").render(**data)
    message = EmailMessage()
    message["From"] = config.EMAIL_FROM or config.EMAIL_USER or ""
    message["To"] = data["email"]
    message["Subject"] = SUBJECTS[kind].format(**data)
    message.set_content("This message requires an HTML capable mail client.")
    message.add_alternative(html, subtype="html")
    return message


async def send_notification(email: str, kind: str, data: Optional[Dict[str, Any]] = None) -> bool:
    if not is_configured():
        logger.info("Email skipped (not configured): %s to %s", kind, email)
        return False
    try:
        message = render(kind, {**(data or {}), "email": email})
        await aiosmtplib.send(
            message,
            hostname=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.EMAIL_USER,
            password=config.EMAIL_PASSWORD,
            start_tls=True,
            timeout=config.SMTP_TIMEOUT,
        )
    except Exception as exc:
        logger.warning("Failed to send %s email to %s: %s", kind, email, exc)
        return False
    logger.info("Email %s sent to %s", kind, email)
    return True


async def notify_welcome(user: Dict[str, Any]) -> bool:
    return await send_notification(user["email"], "welcome", {"name": user.get("name", "")})


async def notify_password_reset(user: Dict[str, Any], token: str) -> bool:
    reset_link = f"{config.APP_URL.rstrip('/')}/reset-password?token={token}"
    return await send_notification(user["email"], "password_reset", {
        "name": user.get("name", ""),
        "reset_link": reset_link,
        "expires_minutes": config.PASSWORD_RESET_EXPIRE_MINUTES,
    })


async def notify_password_changed(user: Dict[str, Any]) -> bool:
    return await send_notification(user["email"], "password_changed", {"name": user.get("name", "")})


async def notify_order_created(user: Dict[str, Any], order: Dict[str, Any]) -> bool:
    return await send_notification(user["email"], "order_confirmation", {
        "name": user.get("name", ""),
        "order_id": order["id"],
        "items": order["items"],
        "total_amount": order["total_amount"],
    })


async def notify_order_status(user: Dict[str, Any], order: Dict[str, Any]) -> bool:
    return await send_notification(user["email"], "order_status", {
        "name": user.get("name", ""),
        "order_id": order["id"],
        "status": order["status"],
        "message": STATUS_MESSAGES.get(order["status"], "Your order status has been updated."),
        "tracking_number": order.get("tracking_number"),
    })

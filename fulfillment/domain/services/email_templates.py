"""
Email templates for purchase confirmation and refund notification.
"""
from html import escape

from fulfillment.db.models.order import Order

_CURRENCY_SYMBOLS = {"usd": "$", "aud": "A$", "eur": "€", "gbp": "£", "ils": "₪"}

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: {accent}; color: white; padding: 24px; border-radius: 10px 10px 0 0; text-align: center;">
    <h1 style="margin: 0; font-size: 26px;">{title}</h1>
  </div>
  <div style="background: #f9fafb; padding: 24px; border-radius: 0 0 10px 10px;">
    <p>Hi {name},</p>
{body}
  </div>
</body>
</html>"""


def format_amount(amount_in_cents: int, currency: str) -> str:
    code = (currency or "usd").lower()
    symbol = _CURRENCY_SYMBOLS.get(code)
    amount = f"{amount_in_cents / 100:,.2f}"
    if symbol:
        return f"{symbol}{amount}"
    return f"{amount} {code.upper()}"


def _customer_name(order: Order) -> str:
    return escape(order.customer_name or "there")


def _product_names(order: Order) -> list[str]:
    return [item.product_name for item in order.items] or ["your purchase"]


def purchase_confirmation(order: Order, public_url: str) -> tuple[str, str]:
    """Returns (subject, html)"""
    names = _product_names(order)
    items_html = "".join(f"<li>{escape(name)}</li>" for name in names)
    body = (
        "    <p>Thank you for your purchase! Your access is ready.</p>\n"
        f"    <ul>{items_html}</ul>\n"
        f"    <p>Total paid: <strong>{format_amount(order.amount_in_cents, order.currency)}</strong></p>\n"
        f"    <p>Order: {order.id}</p>\n"
        f'    <p><a href="{escape(public_url.rstrip("/"))}/account/orders">View your purchases</a></p>'
    )
    html = _LAYOUT.format(
        title="Purchase Confirmation",
        accent="#667eea",
        name=_customer_name(order),
        body=body,
    )
    return f"Purchase Confirmation - {names[0]}", html


def refund_notification(order: Order) -> tuple[str, str]:
    """Returns (subject, html)"""
    body = (
        f"    <p>Your refund has been processed for order <strong>{order.id}</strong>.</p>\n"
        f"    <p>Refund amount: <strong>{format_amount(order.amount_in_cents, order.currency)}</strong></p>\n"
        "    <p>The refund will appear on your original payment method within 5-10 business days.</p>\n"
        "    <p>Your access to the purchased product has been revoked.</p>"
    )
    html = _LAYOUT.format(
        title="Refund Processed",
        accent="#f59e0b",
        name=_customer_name(order),
        body=body,
    )
    return f"Refund Processed - Order {order.id}", html

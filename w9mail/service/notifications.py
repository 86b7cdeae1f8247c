from __future__ import annotations

from html import escape
from typing import Iterable

_FONT = "font-family:'Courier New',Courier,monospace;"

_PARAGRAPH = (
    '<p style="margin:0 0 16px;color:#ffffff;font-size:14px;line-height:1.5;'
    + _FONT
    + '">{line}</p>'
)

_DOCUMENT = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>{title}</title>
</head>
<body style="background:#000;padding:32px;{font}">
  <table role="presentation" cellpadding="0" cellspacing="0" width="100%">
    <tr>
      <td align="center">
        <table role="presentation" cellpadding="0" cellspacing="0" width="100%" style="max-width:640px;border:2px solid #ffffff;padding:28px;background:#000;">
          <tr><td style="text-align:center;">
            <h1 style="margin:0 0 20px;font-size:20px;letter-spacing:0.05em;text-transform:uppercase;color:#ffffff;{font}">{title}</h1>
            {paragraphs}
            <div style="margin:32px 0;text-align:center;">
              <a href="{button_url}" style="text-decoration:none;display:inline-block;border:2px solid #ffffff;padding:12px 24px;color:#ffffff;background:#000;text-transform:uppercase;font-weight:bold;{font}">{button_text}</a>
            </div>
            <p style="margin:0 0 12px;color:#ffffff;font-size:12px;line-height:1.4;{font}word-break:break-word;">If the button doesn't work, copy and paste this link:<br />{button_url}</p>
            <hr style="border:none;border-top:2px solid #ffffff;margin:32px 0;" />
            <p style="margin:0;color:#ffffff;font-size:11px;opacity:0.7;{font}line-height:1.4;">Automated message from {product}. Replies are not monitored.</p>
          </td></tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>
"""


def compose_system_email(
    title: str,
    body_lines: Iterable[str],
    button_text: str,
    button_url: str,
    *,
    product_name: str = "W9 Mail",
) -> str:
    """Render a transactional email with a single call-to-action button.

    Every interpolated value is HTML-escaped, including the URL.
    """

    paragraphs = "".join(_PARAGRAPH.format(line=escape(line)) for line in body_lines)
    return _DOCUMENT.format(
        title=escape(title),
        paragraphs=paragraphs,
        button_text=escape(button_text),
        button_url=escape(button_url),
        product=escape(product_name),
        font=_FONT,
    )


def signup_verification_email(email: str, verify_url: str, *, product_name: str = "W9 Mail", ttl_minutes: int = 30):
    subject = f"Verify your {product_name} account"
    body = compose_system_email(
        subject,
        [
            f"Welcome! Confirm that {email} should send through {product_name}.",
            f"This link expires in {ttl_minutes} minutes.",
        ],
        "Verify account",
        verify_url,
        product_name=product_name,
    )
    return subject, body


def password_reset_email(email: str, reset_url: str, *, product_name: str = "W9 Mail", ttl_minutes: int = 30):
    subject = f"Reset your {product_name} password"
    body = compose_system_email(
        subject,
        [
            f"We received a reset request for {email}.",
            f"This link expires in {ttl_minutes} minutes. If you didn't request it, you can ignore this email.",
        ],
        "Reset password",
        reset_url,
        product_name=product_name,
    )
    return subject, body

"""E-mail bodies for account confirmation and password reset."""

from __future__ import annotations

from html import escape
from urllib.parse import urlencode

from ..mail import OutgoingMail

_HTML_TEMPLATE = """\
<html>
  <body style="font-family: Arial, sans-serif; background-color: #f4f4f4; padding: 20px;">
    <div style="background-color: #fff; padding: 20px; border-radius: 8px; text-align: center;">
      <h2 style="color: #333;">{heading}</h2>
      <p style="color: #555;">{lead}</p>
      <a href="{link}" style="display: inline-block; padding: 10px 20px; margin-top: 20px; color: #fff; background-color: #007BFF; text-decoration: none; border-radius: 5px;">{action}</a>
    </div>
  </body>
</html>
"""


def _link(base_url: str, path: str, **params: str) -> str:
    return f"{base_url.rstrip('/')}{path}?{urlencode(params)}"


def _render(to: str, subject: str, heading: str, lead: str, action: str, link: str) -> OutgoingMail:
    html_body = _HTML_TEMPLATE.format(
        heading=escape(heading),
        lead=escape(lead),
        action=escape(action),
        link=escape(link, quote=True),
    )
    text_body = f"{heading}\n\n{lead}\n{link}\n"
    return OutgoingMail(to=to, subject=subject, html_body=html_body, text_body=text_body)


def verification_mail(to: str, code: str, base_url: str) -> OutgoingMail:
    return _render(
        to,
        subject="Confirm your registration",
        heading="Welcome to Handbook!",
        lead="To confirm your e-mail address, follow the link below:",
        action="Confirm e-mail",
        link=_link(base_url, "/v1/verify", code=code),
    )


def _with_query(url: str, **params: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def password_reset_mail(to: str, token: str, reset_url: str) -> OutgoingMail:
    """Reset e-mail linking to the client page that submits the new password.

    ``reset_url`` is the page itself; the token is appended as a query parameter.
    """
    return _render(
        to,
        subject="Password reset request",
        heading="Password Reset Request",
        lead="To reset your password, follow the link below:",
        action="Reset password",
        link=_with_query(reset_url, token=token),
    )

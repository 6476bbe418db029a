"""Unsubscribe endpoint — public, no auth required.

One-click link in every workflow email. Uses an HMAC token to prevent
spoofed unsubscribes.
"""

import html

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse

from lifecycle_mail.services.rendering import verify_unsubscribe_token

router = APIRouter()


@router.get("/unsubscribe")
async def unsubscribe_page(
    request: Request,
    user: str = Query(""),
    token: str = Query(""),
):
    if not user or not token or not verify_unsubscribe_token(user, token):
        return HTMLResponse(_render_page(
            "Invalid Link",
            "This unsubscribe link is invalid or incomplete. "
            "You can manage email preferences from your account settings.",
            success=False,
        ), status_code=400)

    count = request.app.state.engine.unsubscribe(user)

    if count > 0:
        return HTMLResponse(_render_page(
            "You've Been Unsubscribed",
            "We've stopped all active email sequences for your account. "
            "You won't receive any more of these emails.",
            success=True,
        ))
    return HTMLResponse(_render_page(
        "Already Unsubscribed",
        "Your account has no active email sequences.",
        success=True,
    ))


def _render_page(title: str, message: str, success: bool) -> str:
    color = "#2e7d32" if success else "#c0392b"
    title = html.escape(title)
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{title} — NutriCoach</title>
  <style>
    body {{ font-family: Arial, sans-serif; background: #f4f8f4; margin: 0; padding: 40px 20px; color: #243424; }}
    .container {{ max-width: 500px; margin: 0 auto; background: #fff; border: 1px solid #dfe8df; }}
    .body {{ padding: 32px; line-height: 1.7; font-size: 16px; }}
    .body h2 {{ color: {color}; font-size: 18px; margin: 0 0 16px; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="body">
      <h2>{title}</h2>
      <p>{html.escape(message)}</p>
    </div>
  </div>
</body>
</html>"""

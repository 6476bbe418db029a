"""Message rendering — Jinja2 email templates, variants, unsubscribe links."""

import hashlib
import hmac
import re
import urllib.parse
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from lifecycle_mail.config import EMAIL_TEMPLATES_DIR, PUBLIC_URL, UNSUBSCRIBE_SECRET
from lifecycle_mail.errors import CatalogError
from lifecycle_mail.models import Recipient, StepDefinition, Subscription

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def generate_unsubscribe_token(user_id: str) -> str:
    """Generate an HMAC token for unsubscribe URL verification."""
    secret = (UNSUBSCRIBE_SECRET or "fallback-dev-secret").encode()
    return hmac.new(secret, user_id.encode(), hashlib.sha256).hexdigest()[:32]


def verify_unsubscribe_token(user_id: str, token: str) -> bool:
    """Verify an unsubscribe token is valid for the given user."""
    expected = generate_unsubscribe_token(user_id)
    return hmac.compare_digest(expected, token)


def build_unsubscribe_url(user_id: str) -> str:
    """Build the full unsubscribe URL for a user."""
    token = generate_unsubscribe_token(user_id)
    params = urllib.parse.urlencode({"user": user_id, "token": token})
    return f"{PUBLIC_URL}/unsubscribe?{params}"


def inject_unsubscribe(html: str, user_id: str) -> str:
    """Inject unsubscribe link into email HTML before closing </body> or at end."""
    unsub_url = build_unsubscribe_url(user_id)
    unsub_block = (
        '<div style="text-align:center;padding:16px 32px;font-family:Arial,sans-serif;'
        'font-size:11px;color:#6b7c6b;border-top:1px solid #dfe8df">'
        f'<a href="{unsub_url}" style="color:#6b7c6b;text-decoration:underline">'
        'Unsubscribe</a> from future emails'
        '</div>'
    )

    if '</body>' in html:
        html = html.replace('</body>', f'{unsub_block}</body>')
    elif '</html>' in html:
        html = html.replace('</html>', f'{unsub_block}</html>')
    else:
        html += unsub_block

    return html


def html_to_text(html: str) -> str:
    """Crude plain-text fallback for templates without a .txt twin."""
    text = _TAG_RE.sub("", html)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


class TemplateRenderer:
    """Renders a step for one recipient.

    Lookup order for the body is ``<template>--<variant>.html`` then
    ``<template>.html``; the same for ``.txt``, falling back to the HTML
    with tags stripped.
    """

    def __init__(self, templates_dir: Path = EMAIL_TEMPLATES_DIR):
        self.templates_dir = Path(templates_dir)
        self._env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            autoescape=select_autoescape(["html"]),
        )
        self._subjects = Environment(autoescape=False)

    def validate(self, templates: set[str]) -> None:
        """Raise CatalogError if any referenced template has no HTML file."""
        missing = sorted(t for t in templates if not (self.templates_dir / f"{t}.html").exists())
        if missing:
            raise CatalogError(f"Missing email templates in {self.templates_dir}: {', '.join(missing)}")

    def context(self, sub: Subscription, step: StepDefinition, recipient: Recipient,
                variant: str) -> dict:
        return {
            "first_name": recipient.first_name,
            "full_name": recipient.full_name,
            "email": recipient.email,
            "user_id": sub.user_id,
            "workflow_id": sub.workflow_id,
            "step_number": step.step_number,
            "variant": variant,
            "metadata": sub.metadata or {},
            "app_url": PUBLIC_URL,
        }

    def render_subject(self, step: StepDefinition, ctx: dict) -> str:
        return self._subjects.from_string(step.subject).render(ctx).strip()

    def _select(self, template: str, variant: str, ext: str, ctx: dict) -> str | None:
        names = ([f"{template}--{variant}.{ext}"] if variant else []) + [f"{template}.{ext}"]
        for name in names:
            try:
                return self._env.get_template(name).render(ctx)
            except TemplateNotFound:
                continue
        return None

    def render(self, sub: Subscription, step: StepDefinition, recipient: Recipient,
               variant: str = "") -> tuple[str, str, str]:
        """Return (subject, html, text) with the unsubscribe link injected."""
        ctx = self.context(sub, step, recipient, variant)
        subject = self.render_subject(step, ctx)

        html = self._select(step.template, variant, "html", ctx)
        if html is None:
            raise TemplateNotFound(f"{step.template}.html")
        text = self._select(step.template, variant, "txt", ctx) or html_to_text(html)

        html = inject_unsubscribe(html, sub.user_id)
        text = f"{text}\n\nUnsubscribe: {build_unsubscribe_url(sub.user_id)}\n"
        return subject, html, text

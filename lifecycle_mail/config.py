"""Lifecycle Mail configuration — loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

REPO_ROOT = Path(__file__).resolve().parent.parent

# Email templates (Jinja2): <template>.html, optional <template>.txt and
# per-variant <template>--<variant>.html overrides
EMAIL_TEMPLATES_DIR = Path(
    os.environ.get("EMAIL_TEMPLATES_DIR", "")
    or Path(__file__).resolve().parent / "templates" / "emails"
)

# Optional YAML file with workflow definitions added to the built-in catalog
WORKFLOWS_FILE = os.environ.get("WORKFLOWS_FILE", "")

# Supabase
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")

# Outbound transport: "resend" sends directly, "queue" writes email_queue rows
EMAIL_TRANSPORT = os.environ.get("EMAIL_TRANSPORT", "resend")

# Resend (email sending)
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM_EMAIL = os.environ.get("MAIL_FROM_EMAIL", "hello@nutricoach.app")
MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "NutriCoach")

# Public links
PUBLIC_URL = os.environ.get("PUBLIC_URL", "https://nutricoach.app")
UNSUBSCRIBE_SECRET = os.environ.get("UNSUBSCRIBE_SECRET", "")

# Webhook secret (for app backend → Lifecycle Mail auth)
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")

# Server
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# Dispatcher
DISPATCH_INTERVAL_MINUTES = int(os.environ.get("DISPATCH_INTERVAL_MINUTES", "1"))
DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "500"))
DISPATCH_CONCURRENCY = int(os.environ.get("DISPATCH_CONCURRENCY", "5"))

# Cancel subscriptions overdue for this many days (0 disables the sweep)
STALE_SUBSCRIPTION_DAYS = int(os.environ.get("STALE_SUBSCRIPTION_DAYS", "0"))

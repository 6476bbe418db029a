#!/usr/bin/env python3
"""NutriCoach Lifecycle Mail — workflow engine service.

Launch: python3 run_server.py
Serves at http://0.0.0.0:8000 (or PORT env var)
"""

import logging
import os

import uvicorn

from lifecycle_mail.config import HOST, PORT


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print("  NutriCoach — Lifecycle Mail")
    print("=" * 60)

    # Validate required env vars
    supabase_url = os.environ.get("SUPABASE_URL", "")
    if not supabase_url:
        print("\n  WARNING: SUPABASE_URL not set. Set environment variables:")
        print("    SUPABASE_URL, SUPABASE_SERVICE_KEY")
        print("  Continuing anyway for local development...\n")

    # Importing the catalog validates every definition; a bad one stops here
    from lifecycle_mail.workflows import CATALOG

    # Mirror workflow definitions into Supabase for reporting
    if supabase_url:
        print(f"\n[1/2] Syncing {len(CATALOG)} workflows to Supabase...")
        from postgrest.exceptions import APIError

        from lifecycle_mail.sync import sync_catalog
        try:
            stats = sync_catalog(CATALOG)
            print(f"  -> {stats['workflows']} workflows synced")
            print(f"  -> {stats['steps']} steps synced")
        except APIError as e:
            print(f"  -> Sync failed: {e.message or e}")
            print("  -> Continuing without sync...")
    else:
        print("\n[1/2] Skipping sync (no Supabase connection)")

    # Start server
    print(f"[2/2] Starting server on {HOST}:{PORT}")
    print(f"\n  API: http://{HOST}:{PORT}")
    print("  Press Ctrl+C to stop\n")

    from lifecycle_mail.app import create_app
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()

"""Retention — first weekly check-in for new premium subscribers."""

WORKFLOW = {
    "id": "retention-weekly",
    "name": "Weekly Retention",
    "type": "retention",
    "trigger": "subscription_start",
    "active": True,
    "target_segments": ["premium_users"],
    "steps": [
        {"id": "weekly-checkin", "step": 1, "delay_days": 7,
         "template": "weekly_checkin", "subject": "Your first week with Premium"},
    ],
}

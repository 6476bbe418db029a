"""Engagement recovery — re-engage users after 7 and 14 days of inactivity."""

WORKFLOW_7D = {
    "id": "engagement-recovery-7d",
    "name": "Re-engagement: 7 days inactive",
    "type": "engagement",
    "trigger": "inactivity_7_days",
    "active": True,
    "target_segments": ["all_users"],
    "exclude_segments": ["highly_engaged"],
    "steps": [
        {"id": "inactive-7d-reminder", "step": 1, "delay_days": 0,
         "template": "reminder_inactive_7d",
         "subject": "We miss you, {{ first_name }}! Pick up where you left off",
         "variants": ["variant_a", "variant_b"]},
    ],
}

WORKFLOW_14D = {
    "id": "engagement-recovery-14d",
    "name": "Re-engagement: 14 days inactive",
    "type": "engagement",
    "trigger": "inactivity_14_days",
    "active": True,
    "target_segments": ["all_users"],
    "exclude_segments": ["highly_engaged"],
    "steps": [
        {"id": "inactive-14d-reminder", "step": 1, "delay_days": 0,
         "template": "reminder_inactive_14d", "subject": "Your nutrition plan is on pause"},
        {
            "id": "inactive-14d-survey",
            "step": 2,
            "delay_days": 3,
            "template": "weekly_checkin",
            "subject": "Quick check-in: how can we help?",
            "conditions": [
                {"kind": "engagement_score", "operator": "less_than", "value": 0.3},
            ],
        },
    ],
}

"""Trial conversion — two reminders before the trial runs out."""

WORKFLOW = {
    "id": "trial-conversion",
    "name": "Trial Conversion",
    "type": "trial_conversion",
    "trigger": "trial_ending",
    "active": True,
    "target_segments": ["trial_users"],
    "steps": [
        {"id": "trial-ending-3d", "step": 1, "delay_days": 0,
         "template": "trial_ending", "subject": "Your trial ends in 3 days"},
        {
            "id": "trial-ending-1d",
            "step": 2,
            "delay_days": 2,
            "template": "trial_ending",
            "subject": "Last day of your trial",
            "variants": ["urgent_variant", "benefit_variant"],
            "conditions": [
                {"kind": "subscription_status", "operator": "equals", "value": "trialing"},
            ],
        },
    ],
}

"""Onboarding sequence — five steps over three weeks.

Delays are gaps from the previous send (days 1, 3, 7, 14, 21 after signup).
"""

WORKFLOW = {
    "id": "onboarding-sequence",
    "name": "Onboarding Journey",
    "description": "Walks new users through profile, first AI menu, recipes and progress tracking.",
    "type": "onboarding",
    "trigger": "signup",
    "active": True,
    "steps": [
        {
            "id": "onboarding-day-1",
            "step": 1,
            "delay_days": 1,
            "template": "onboarding_step_1",
            "subject": "Day 1: complete your nutrition profile",
            # Only nag users whose profile is less than 80% filled in
            "conditions": [
                {"kind": "profile_field", "field": "profile_completeness",
                 "operator": "less_than", "value": 80},
            ],
        },
        {"id": "onboarding-day-3", "step": 2, "delay_days": 2,
         "template": "onboarding_step_2", "subject": "Day 3: generate your first AI menu"},
        {"id": "onboarding-day-7", "step": 3, "delay_days": 4,
         "template": "onboarding_step_3", "subject": "Day 7: explore your personalised recipes"},
        {"id": "onboarding-day-14", "step": 4, "delay_days": 7,
         "template": "onboarding_step_4", "subject": "Day 14: fine-tune your results"},
        {"id": "onboarding-day-21", "step": 5, "delay_days": 7,
         "template": "onboarding_step_5", "subject": "Day 21: take it to the next level"},
    ],
}

"""Welcome sequence — immediate welcome, then a getting-started nudge."""

WORKFLOW = {
    "id": "welcome-sequence",
    "name": "Welcome Sequence",
    "description": "Greets every new account right away and follows up with first steps.",
    "type": "welcome",
    "trigger": "signup",
    "active": True,
    "steps": [
        {"id": "welcome-immediate", "step": 1, "delay_days": 0, "delay_hours": 0,
         "template": "welcome", "subject": "Welcome to NutriCoach, {{ first_name }}!"},
        {"id": "welcome-first-steps", "step": 2, "delay_days": 3,
         "template": "welcome_first_steps", "subject": "Three things to try this week"},
    ],
}

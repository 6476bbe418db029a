"""Catalog → Supabase sync.

Mirrors workflow and step definitions into email_sequences and
email_sequence_steps so reporting queries can join against them. The
in-process catalog stays authoritative; these tables are read-only copies.
"""

from lifecycle_mail import supabase_client as db
from lifecycle_mail.workflows.catalog import WorkflowCatalog


def sync_catalog(catalog: WorkflowCatalog) -> dict:
    """Upsert every workflow and step. Returns {"workflows": N, "steps": N}."""
    stats = {"workflows": 0, "steps": 0}

    for wf in catalog:
        db.upsert("email_sequences", {
            "id": wf.id,
            "name": wf.name,
            "type": wf.type.value,
            "trigger_event": wf.trigger_event.value,
            "status": "active" if wf.active else "paused",
            "target_segments": sorted(wf.target_segments),
            "exclude_segments": sorted(wf.exclude_segments),
        }, on_conflict="id")
        stats["workflows"] += 1

        for step in wf.steps:
            db.upsert("email_sequence_steps", {
                "id": step.id,
                "sequence_id": wf.id,
                "step_number": step.step_number,
                "name": f"Step {step.step_number}",
                "delay_days": step.delay_days,
                "delay_hours": step.delay_hours,
                "template": step.template,
                "subject_line": step.subject,
                "variants": list(step.variants),
            }, on_conflict="id")
            stats["steps"] += 1

    db.log_action("catalog_synced", "catalog", "",
                  f"{stats['workflows']} workflows, {stats['steps']} steps")
    return stats

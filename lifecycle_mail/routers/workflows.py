"""Workflows router — catalog, stats, on-demand processing, operator cancel."""

from fastapi import APIRouter, Depends, HTTPException, Request

from lifecycle_mail.errors import BatchReadError
from lifecycle_mail.routers.webhooks import check_secret

router = APIRouter()


def _workflow_summary(wf) -> dict:
    return {
        "id": wf.id,
        "name": wf.name,
        "type": wf.type.value,
        "trigger_event": wf.trigger_event.value,
        "active": wf.active,
        "target_segments": sorted(wf.target_segments),
        "exclude_segments": sorted(wf.exclude_segments),
        "steps": len(wf.steps),
    }


@router.get("/workflows")
async def workflow_list(request: Request):
    """List all workflows with performance summary."""
    engine = request.app.state.engine
    return [
        {**_workflow_summary(wf), "stats": engine.workflow_stats(wf.id)}
        for wf in engine.catalog
    ]


@router.get("/workflows/{workflow_id}")
async def workflow_detail(request: Request, workflow_id: str):
    """Detail view for a workflow — steps, conditions, variants, stats."""
    engine = request.app.state.engine
    wf = engine.catalog.get(workflow_id)
    if not wf:
        raise HTTPException(status_code=404, detail="Workflow not found")

    steps = [
        {
            "id": s.id,
            "step_number": s.step_number,
            "delay_days": s.delay_days,
            "delay_hours": s.delay_hours,
            "template": s.template,
            "subject": s.subject,
            "variants": list(s.variants),
            "conditions": [
                {"kind": c.kind, "operator": c.operator.value, "value": c.value, "field": c.field}
                for c in s.conditions
            ],
        }
        for s in wf.steps
    ]
    return {**_workflow_summary(wf), "steps": steps, "stats": engine.workflow_stats(wf.id)}


@router.post("/workflows/process-now", dependencies=[Depends(check_secret)])
async def process_now(request: Request):
    """Manually trigger workflow processing."""
    try:
        result = await request.app.state.engine.process_due_workflows()
    except BatchReadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.post("/subscriptions/{subscription_id}/cancel", dependencies=[Depends(check_secret)])
async def cancel(request: Request, subscription_id: str):
    """Cancel an active subscription."""
    engine = request.app.state.engine
    sub = engine.store.get(subscription_id)
    if not sub:
        raise HTTPException(status_code=404, detail="Subscription not found")

    cancelled = engine.cancel_subscription(subscription_id)
    return {"status": "cancelled" if cancelled else "unchanged"}

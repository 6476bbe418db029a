"""Engagement scorer — a [0, 1] score from send/open/click history."""

from datetime import datetime

from lifecycle_mail.models import EngagementSnapshot
from lifecycle_mail.timing import parse_ts, utc_now

RECENCY_WEIGHT = 0.4
OPEN_WEIGHT = 0.35
CLICK_WEIGHT = 0.25

# Engagement older than this contributes nothing to recency
RECENCY_WINDOW_DAYS = 30


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def score_snapshot(snapshot: EngagementSnapshot, now: datetime) -> float:
    """Weighted recency, open rate and click rate. No sends scores 0."""
    if snapshot.sent_count <= 0:
        return 0.0

    recency = 0.0
    if snapshot.last_engagement_at is not None:
        days = (now - snapshot.last_engagement_at).total_seconds() / 86400
        recency = _clamp(1 - max(days, 0) / RECENCY_WINDOW_DAYS)

    open_rate = _clamp(snapshot.opened_count / snapshot.sent_count)
    click_rate = _clamp(snapshot.click_count / snapshot.opened_count) if snapshot.opened_count else 0.0

    score = RECENCY_WEIGHT * recency + OPEN_WEIGHT * open_rate + CLICK_WEIGHT * click_rate
    return round(_clamp(score), 4)


def snapshot_from_sends(user_id: str, sends: list[dict]) -> EngagementSnapshot:
    """Aggregate workflow_sends rows into counts and last engagement time."""
    opened = 0
    clicked = 0
    last: datetime | None = None
    for send in sends:
        opened_at = parse_ts(send.get("opened_at"))
        clicked_at = parse_ts(send.get("clicked_at"))
        if opened_at:
            opened += 1
        if clicked_at:
            clicked += 1
        for ts in (opened_at, clicked_at):
            if ts and (last is None or ts > last):
                last = ts
    return EngagementSnapshot(
        user_id=user_id,
        sent_count=len(sends),
        opened_count=opened,
        click_count=clicked,
        last_engagement_at=last,
    )


class EngagementScorer:
    """Computes snapshots on demand from the send log. No caching."""

    def __init__(self, store, clock=utc_now):
        self._store = store
        self._clock = clock

    def snapshot(self, user_id: str) -> EngagementSnapshot:
        snap = snapshot_from_sends(user_id, self._store.sends_for_user(user_id))
        return EngagementSnapshot(
            user_id=snap.user_id,
            sent_count=snap.sent_count,
            opened_count=snap.opened_count,
            click_count=snap.click_count,
            last_engagement_at=snap.last_engagement_at,
            score=score_snapshot(snap, self._clock()),
        )

    def score(self, user_id: str) -> float:
        return self.snapshot(user_id).score

"""Tests for the step processor and the due-batch dispatcher."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from lifecycle_mail.errors import BatchReadError
from lifecycle_mail.models import StepDefinition, StepOutcome, Subscription
from lifecycle_mail.services.dispatcher import idempotency_key, select_variant
from lifecycle_mail.timing import to_iso
from lifecycle_mail.tests.conftest import T0, make_subscription, run


def _add(fake_db, **overrides):
    row = make_subscription(**overrides)
    fake_db.store["workflow_subscriptions"].append(row)
    return row


def _small_engine(transport, profiles, clock, batch_size=3):
    from lifecycle_mail.engine import WorkflowEngine
    from lifecycle_mail.services.store import SubscriptionStore
    from lifecycle_mail.workflows import CATALOG

    return WorkflowEngine(CATALOG, SubscriptionStore(), transport, profiles,
                          clock=clock, batch_size=batch_size)


class TestIdempotencyKey:
    def test_deterministic(self):
        assert idempotency_key("sub-1", 2) == idempotency_key("sub-1", 2)

    def test_differs_per_step_and_subscription(self):
        keys = {idempotency_key("sub-1", 1), idempotency_key("sub-1", 2), idempotency_key("sub-2", 1)}
        assert len(keys) == 3


class TestSelectVariant:
    STEP = StepDefinition(id="s", step_number=1, template="t", subject="",
                          variants=("variant_a", "variant_b"))

    def test_no_variants(self):
        plain = StepDefinition(id="p", step_number=1, template="t", subject="")
        assert select_variant("u1", plain) == ""

    def test_stable_per_user(self):
        assert select_variant("u1", self.STEP) == select_variant("u1", self.STEP)

    def test_spreads_across_users(self):
        picks = {select_variant(f"user-{i}", self.STEP) for i in range(50)}
        assert picks == {"variant_a", "variant_b"}


class TestProcessDue:
    def test_empty_batch(self, engine):
        result = run(engine.process_due_workflows())
        assert result.processed_count == 0
        assert not result.skipped

    def test_sends_due_step_and_schedules_next(self, engine, fake_db, transport, clock):
        row = _add(fake_db, workflow_id="welcome-sequence", current_step=1,
                   next_due_at=to_iso(T0 - timedelta(days=1)))
        clock.advance(hours=1)

        result = run(engine.process_due_workflows())

        assert result.processed_count == 1
        assert result.sent == 1
        assert [m.step_id for m in transport.sent] == ["welcome-first-steps"]
        # last step: completed in the same write
        assert row["status"] == "completed"
        assert row["current_step"] == 2
        assert row["next_due_at"] is None
        assert row["completed_at"] == to_iso(clock.now)

    def test_next_due_is_relative_to_send(self, engine, fake_db, profiles, clock):
        profiles.fields["user-1"]["profile_completeness"] = 40
        row = _add(fake_db, workflow_id="onboarding-sequence", current_step=0,
                   next_due_at=to_iso(T0 - timedelta(hours=5)))

        run(engine.process_due_workflows())

        assert row["current_step"] == 1
        assert row["last_sent_at"] == to_iso(T0)
        assert row["next_due_at"] == to_iso(T0 + timedelta(days=2))

    def test_not_yet_due_is_ignored(self, engine, fake_db, transport):
        _add(fake_db, next_due_at=to_iso(T0 + timedelta(seconds=1)))
        result = run(engine.process_due_workflows())
        assert result.processed_count == 0
        assert transport.sent == []

    def test_records_send_with_variant(self, engine, fake_db):
        _add(fake_db, user_id="u7", workflow_id="engagement-recovery-7d")
        run(engine.process_due_workflows())

        (send,) = fake_db.store["workflow_sends"]
        step = engine.catalog.get_step("engagement-recovery-7d", 1)
        assert send["variant"] == select_variant("u7", step)
        assert send["message_id"] == "msg-1"
        assert send["user_id"] == "u7"

    def test_message_fields(self, engine, fake_db, transport):
        row = _add(fake_db, user_id="u9", workflow_id="welcome-sequence")
        run(engine.process_due_workflows())

        (message,) = transport.sent
        assert message.recipient == "u9@example.com"
        assert message.subject == "Welcome to NutriCoach, Sam!"
        assert message.idempotency_key == idempotency_key(row["id"], 1)
        assert message.scheduled_at == T0
        assert "Unsubscribe" in message.html_body

    def test_pages_through_every_due_row(self, fake_db, transport, profiles, clock):
        for i in range(7):
            _add(fake_db, user_id=f"u{i}", next_due_at=to_iso(T0 - timedelta(minutes=i)))

        result = run(_small_engine(transport, profiles, clock).process_due_workflows())

        assert result.processed_count == 7
        assert result.sent == 7
        assert len(transport.sent) == 7

    def test_stalled_rows_do_not_block_newer_work(self, fake_db, transport, profiles, clock):
        for user in ("u1", "u2"):
            profiles.fields[user]["profile_completeness"] = 100
            _add(fake_db, user_id=user, workflow_id="onboarding-sequence",
                 next_due_at=to_iso(T0 - timedelta(days=5)))
        fresh = _add(fake_db, user_id="u3", workflow_id="welcome-sequence")
        small = _small_engine(transport, profiles, clock, batch_size=2)

        result = run(small.process_due_workflows())

        assert result.stalled == 2
        assert result.sent == 1
        assert fresh["current_step"] == 1
        assert transport.sent_to("u3@example.com")

    def test_rows_sharing_a_due_time_are_each_read_once(self, fake_db, transport, profiles, clock):
        for i in range(5):
            profiles.fields[f"u{i}"]["profile_completeness"] = 100
            _add(fake_db, user_id=f"u{i}", workflow_id="onboarding-sequence")

        result = run(_small_engine(transport, profiles, clock, batch_size=2).process_due_workflows())

        assert result.processed_count == 5
        assert result.stalled == 5

    def test_unreadable_batch_raises(self, engine, fake_db):
        fake_db.fail("workflow_subscriptions", "select")
        with pytest.raises(BatchReadError):
            run(engine.process_due_workflows())

    def test_unreadable_later_page_keeps_earlier_results(self, fake_db, transport, profiles, clock):
        small = _small_engine(transport, profiles, clock, batch_size=2)
        page = [_add(fake_db, user_id=f"u{i}") for i in range(2)]
        failure = BatchReadError("Could not read due subscriptions: connection reset")

        with patch.object(small.store, "due", side_effect=[list(page), failure]):
            result = run(small.process_due_workflows())

        assert result.sent == 2
        assert result.errors == [str(failure)]

    def test_skips_while_running(self, engine):
        async def overlapping():
            async with engine.dispatcher._lock:
                assert engine.dispatcher.running
                return await engine.process_due_workflows()

        result = run(overlapping())
        assert result.skipped is True
        assert result.processed_count == 0


class TestStepOutcomes:
    def test_conditions_false_stalls_without_change(self, engine, fake_db, profiles, transport):
        profiles.fields["user-1"]["profile_completeness"] = 100
        row = _add(fake_db, workflow_id="onboarding-sequence")
        before = dict(row)

        result = run(engine.process_due_workflows())

        assert result.stalled == 1
        assert transport.sent == []
        assert row == before

    def test_stalled_step_retries_every_tick(self, engine, fake_db, profiles, transport, clock):
        profiles.fields["user-1"]["profile_completeness"] = 100
        _add(fake_db, workflow_id="onboarding-sequence")

        assert run(engine.process_due_workflows()).stalled == 1
        clock.advance(minutes=1)
        assert run(engine.process_due_workflows()).stalled == 1

        profiles.fields["user-1"]["profile_completeness"] = 60
        clock.advance(minutes=1)
        assert run(engine.process_due_workflows()).sent == 1
        assert [m.step_id for m in transport.sent] == ["onboarding-day-1"]

    def test_transport_failure_leaves_row_due(self, engine, fake_db, transport, clock):
        transport.fail = True
        row = _add(fake_db)

        result = run(engine.process_due_workflows())
        assert result.failed == 1
        assert result.errors == []
        assert row["current_step"] == 0
        assert row["next_due_at"] == to_iso(T0)
        assert fake_db.store["workflow_sends"] == []

        transport.fail = False
        clock.advance(minutes=1)
        assert run(engine.process_due_workflows()).sent == 1
        assert row["current_step"] == 1

    def test_segment_change_cancels(self, engine, fake_db, profiles, transport):
        profiles.segments["user-1"] = {"all_users", "highly_engaged"}
        row = _add(fake_db, workflow_id="engagement-recovery-14d")

        result = run(engine.process_due_workflows())

        assert result.cancelled == 1
        assert row["status"] == "cancelled"
        assert row["cancel_reason"] == "ineligible"
        assert row["next_due_at"] is None
        assert transport.sent == []

    def test_unknown_workflow_cancels(self, engine, fake_db):
        row = _add(fake_db, workflow_id="retired-flow")
        result = run(engine.process_due_workflows())
        assert result.cancelled == 1
        assert row["cancel_reason"] == "workflow_removed"

    def test_missing_recipient_cancels(self, engine, fake_db, profiles):
        profiles.missing_recipients.add("user-1")
        row = _add(fake_db)
        result = run(engine.process_due_workflows())
        assert result.cancelled == 1
        assert row["cancel_reason"] == "recipient_missing"

    def test_past_last_step_completes(self, engine, fake_db, transport):
        row = _add(fake_db, workflow_id="welcome-sequence", current_step=2)
        result = run(engine.process_due_workflows())
        assert result.completed == 1
        assert row["status"] == "completed"
        assert row["next_due_at"] is None
        assert transport.sent == []

    def test_row_error_does_not_abort_batch(self, engine, fake_db, transport):
        fake_db.store["workflow_subscriptions"].append(
            {"id": "broken", "status": "active", "next_due_at": to_iso(T0 - timedelta(hours=1))}
        )
        _add(fake_db, user_id="u2")

        result = run(engine.process_due_workflows())

        assert result.processed_count == 2
        assert result.failed == 1
        assert result.sent == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("broken:")

    def test_persistence_failure_is_per_row(self, engine, fake_db):
        fake_db.fail("workflow_sends", "upsert")
        _add(fake_db, user_id="u1")
        _add(fake_db, user_id="u2")

        result = run(engine.process_due_workflows())

        assert result.failed == 2
        assert len(result.errors) == 2


class TestConcurrentAdvance:
    """Two runners holding the same row: exactly one advances it."""

    def test_stale_copy_conflicts(self, engine, fake_db, transport):
        row = _add(fake_db)
        first = Subscription.from_row(row)
        stale = Subscription.from_row(row)

        assert run(engine.processor.process(first)) is StepOutcome.SENT
        assert run(engine.processor.process(stale)) is StepOutcome.CONFLICT

        assert row["current_step"] == 1
        assert row["send_count"] == 1
        # the replay reached the transport but collapsed on the idempotency key
        assert transport.calls == 2
        assert len(transport.sent) == 1
        assert len(fake_db.store["workflow_sends"]) == 1

    def test_inactive_subscription_is_not_processed(self, engine, fake_db, transport):
        row = _add(fake_db, status="cancelled", next_due_at=None)
        outcome = run(engine.processor.process(Subscription.from_row(row)))
        assert outcome is StepOutcome.CONFLICT
        assert transport.sent == []

    def test_cancel_between_read_and_write(self, engine, fake_db, transport):
        row = _add(fake_db)
        sub = Subscription.from_row(row)
        engine.cancel_subscription(row["id"])

        assert run(engine.processor.process(sub)) is StepOutcome.CONFLICT
        assert row["status"] == "cancelled"
        assert row["current_step"] == 0

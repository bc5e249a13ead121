"""Tests for abo.lifecycle: approve, reject, modify, execute and expire."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from abo.engine import build_engine
from abo.errors import ActionNotFound, DeliveryFailed, InvalidTransition, Unauthorized
from abo.persistence.database import init_db
from abo.providers.base import OwnerNotifier
from abo.providers.local import RecordingDeliveryChannel
from abo.schemas.actions import ActionModifications, ActionStatus, AgentAction, GeneratedContent
from abo.schemas.agents import AgentType, MessageTone
from abo.schemas.events import Event
from abo.schemas.memory import MemoryType
from abo.schemas.situation import Situation, SubscriberSnapshot

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)
LATER = NOW + timedelta(hours=49)


class _Notifier(OwnerNotifier):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.expired: list[tuple[str | None, list[str]]] = []

    async def actions_expired(self, user_id, recipient, actions):
        if self.fail:
            raise RuntimeError("mail server down")
        self.expired.append((recipient, [a.action_id for a in actions]))

    async def action_auto_approved(self, user_id, recipient, action):
        pass


class _HangingChannel(RecordingDeliveryChannel):
    """Never finishes a send while ``hang`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.hang = True

    async def send(self, message):
        if self.hang:
            await asyncio.Event().wait()
        return await super().send(message)


# ── Factories ─────────────────────────────────────────────────────


async def _engine(*, delivery=None, notifier=None):
    db = await init_db(":memory:")
    engine = build_engine(
        db,
        delivery=delivery or RecordingDeliveryChannel(),
        notifier=notifier or _Notifier(),
        clock=lambda: NOW,
    )
    config = await engine.configs.get_config("user-1", AgentType.RECOVERY)
    await engine.configs.save_config(
        config.model_copy(update={"is_active": True, "notification_email": "owner@example.com"})
    )
    for sub_id, name in (("sub-1", "Ann"), ("sub-2", "Bob")):
        await engine.subscribers.upsert_subscriber(
            "user-1", sub_id, email=f"{name.lower()}@example.com", name=name, plan="Pro", mrr=2900
        )
    return engine


async def _pending(engine, subscriber_id: str = "sub-1") -> AgentAction:
    result = await engine.orchestrator.handle_event(
        "user-1",
        Event(type="payment_failed", subscriber_id=subscriber_id, data={"amount": 2900}),
    )
    assert result.action.status == ActionStatus.PENDING_APPROVAL
    return result.action


async def _approved(engine) -> AgentAction:
    action = await _pending(engine)
    assert await engine.actions.transition(
        action.action_id, ActionStatus.PENDING_APPROVAL, ActionStatus.APPROVED
    )
    return action


def _refund_action() -> AgentAction:
    return AgentAction(
        action_id="refund-1",
        user_id="user-1",
        subscriber_id="sub-2",
        agent_type=AgentType.RETENTION,
        trigger="cancel_pending",
        action_type="offer_partial_refund",
        strategy="goodwill",
        content=GeneratedContent(subject="s", body="b"),
        situation=Situation(
            subscriber=SubscriberSnapshot(id="sub-2", email="bob@example.com"),
            trigger="cancel_pending",
            timestamp=NOW,
        ),
        confidence=0.5,
        created_at=NOW,
    )


# ── Approve and execute ───────────────────────────────────────────


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_sends_and_executes(self):
        delivery = RecordingDeliveryChannel()
        engine = await _engine(delivery=delivery)
        action = await _pending(engine)

        done = await engine.lifecycle.approve_action(action.action_id, "user-1")

        assert done.status == ActionStatus.EXECUTED
        assert done.approved_by == "user-1"
        assert done.approved_at == NOW
        assert done.executed_at == NOW
        assert done.message_id == "local-1"
        sent = delivery.sent[0]
        assert sent.to == "ann@example.com"
        assert sent.subject == "A problem with your Pro payment"
        assert sent.tags["action_id"] == action.action_id

        interactions = await engine.memory.get_memories_by_type(
            "user-1", "sub-1", MemoryType.INTERACTION
        )
        assert interactions[0].key == "email_sent"
        assert interactions[0].content["details"]["message_id"] == "local-1"
        # Outcomes arrive later; approving does not resolve the episode
        episode = await engine.learning.get_episode(done.episode_id)
        assert not episode.resolved
        await engine.close()

    @pytest.mark.asyncio
    async def test_approve_twice_is_refused(self):
        engine = await _engine()
        action = await _pending(engine)
        await engine.lifecycle.approve_action(action.action_id, "user-1")

        with pytest.raises(InvalidTransition) as exc_info:
            await engine.lifecycle.approve_action(action.action_id, "user-1")

        assert exc_info.value.current == ActionStatus.EXECUTED
        await engine.close()

    @pytest.mark.asyncio
    async def test_approve_expired_is_refused(self):
        engine = await _engine()
        action = await _pending(engine)
        await engine.lifecycle.sweep_expired(LATER)

        with pytest.raises(InvalidTransition, match="'expired' to 'approved'"):
            await engine.lifecycle.approve_action(action.action_id, "user-1")
        await engine.close()

    @pytest.mark.asyncio
    async def test_other_owner_is_unauthorized(self):
        engine = await _engine()
        action = await _pending(engine)

        with pytest.raises(Unauthorized):
            await engine.lifecycle.approve_action(action.action_id, "user-2")
        with pytest.raises(Unauthorized):
            await engine.lifecycle.reject_action(action.action_id, "user-2")

        stored = await engine.actions.get(action.action_id)
        assert stored.status == ActionStatus.PENDING_APPROVAL
        await engine.close()

    @pytest.mark.asyncio
    async def test_unknown_action(self):
        engine = await _engine()
        with pytest.raises(ActionNotFound):
            await engine.lifecycle.approve_action("nope", "user-1")
        await engine.close()

    @pytest.mark.asyncio
    async def test_failed_send_stays_approved_and_can_retry(self):
        delivery = RecordingDeliveryChannel(fail_with="mailbox full")
        engine = await _engine(delivery=delivery)
        action = await _pending(engine)

        with pytest.raises(DeliveryFailed):
            await engine.lifecycle.approve_action(action.action_id, "user-1")

        stored = await engine.actions.get(action.action_id)
        assert stored.status == ActionStatus.APPROVED
        assert stored.last_error == "mailbox full"
        assert stored.delivery_attempts == 1

        delivery.fail_with = None
        done = await engine.lifecycle.execute_action(action.action_id)
        assert done.status == ActionStatus.EXECUTED
        assert len(delivery.sent) == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_cancelled_send_releases_claim(self):
        delivery = _HangingChannel()
        engine = await _engine(delivery=delivery)
        action = await _pending(engine)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(
                engine.lifecycle.approve_action(action.action_id, "user-1"), 0.05
            )

        stored = await engine.actions.get(action.action_id)
        assert stored.status == ActionStatus.APPROVED
        assert stored.last_error == "send interrupted (CancelledError)"
        assert stored.delivery_attempts == 1

        delivery.hang = False
        done = await engine.lifecycle.execute_action(action.action_id)
        assert done.status == ActionStatus.EXECUTED
        assert len(delivery.sent) == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over_after_lease(self):
        delivery = RecordingDeliveryChannel()
        engine = await _engine(delivery=delivery)
        action = await _approved(engine)
        # Claim left behind by an executor that died mid-send
        await engine.actions.claim_execution(
            action.action_id, "dead", claimed_at=NOW - timedelta(minutes=10)
        )

        done = await engine.lifecycle.execute_action(action.action_id)

        assert done.status == ActionStatus.EXECUTED
        assert len(delivery.sent) == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_live_claim_is_respected(self):
        delivery = RecordingDeliveryChannel()
        engine = await _engine(delivery=delivery)
        action = await _approved(engine)
        await engine.actions.claim_execution(
            action.action_id, "busy", claimed_at=NOW - timedelta(minutes=1)
        )

        with pytest.raises(InvalidTransition, match="already being executed"):
            await engine.lifecycle.execute_action(action.action_id)
        assert delivery.sent == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_execute_requires_approval(self):
        delivery = RecordingDeliveryChannel()
        engine = await _engine(delivery=delivery)
        action = await _pending(engine)

        with pytest.raises(InvalidTransition, match="not approved"):
            await engine.lifecycle.execute_action(action.action_id)
        assert delivery.sent == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_batch_approve_reports_each_action(self):
        engine = await _engine()
        first = await _pending(engine, "sub-1")
        second = await _pending(engine, "sub-2")
        await engine.lifecycle.reject_action(second.action_id, "user-1")

        result = await engine.lifecycle.batch_approve(
            [first.action_id, second.action_id, "missing"], "user-1"
        )

        assert result.approved == [first.action_id]
        assert set(result.failed) == {second.action_id, "missing"}
        assert "rejected" in result.failed[second.action_id]
        await engine.close()


# ── Reject and modify ─────────────────────────────────────────────


class TestRejectAndModify:
    @pytest.mark.asyncio
    async def test_reject(self):
        engine = await _engine()
        action = await _pending(engine)

        rejected = await engine.lifecycle.reject_action(
            action.action_id, "user-1", "too pushy"
        )

        assert rejected.status == ActionStatus.REJECTED
        assert rejected.rejection_reason == "too pushy"
        assert rejected.rejected_at == NOW
        with pytest.raises(InvalidTransition):
            await engine.lifecycle.reject_action(action.action_id, "user-1")
        await engine.close()

    @pytest.mark.asyncio
    async def test_modify_regenerates_content(self):
        engine = await _engine()
        action = await _pending(engine)

        modified = await engine.lifecycle.modify_action(
            action.action_id,
            "user-1",
            ActionModifications(tone=MessageTone.URGENT, custom_note="Call us any time."),
        )

        assert modified.status == ActionStatus.PENDING_APPROVAL
        assert modified.details.tone == MessageTone.URGENT
        assert modified.content.subject == "Action needed: your Pro payment"
        assert "Call us any time." in modified.content.body
        assert modified.description.startswith("Send urgent payment reminder email")
        assert modified.modifications.custom_note == "Call us any time."
        await engine.close()

    @pytest.mark.asyncio
    async def test_modifications_accumulate(self):
        engine = await _engine()
        action = await _pending(engine)
        await engine.lifecycle.modify_action(
            action.action_id, "user-1", ActionModifications(custom_note="First note.")
        )

        modified = await engine.lifecycle.modify_action(
            action.action_id, "user-1", ActionModifications(tone=MessageTone.URGENT)
        )

        assert modified.modifications.custom_note == "First note."
        assert modified.modifications.tone == MessageTone.URGENT
        await engine.close()

    @pytest.mark.asyncio
    async def test_modify_only_pending(self):
        engine = await _engine()
        action = await _pending(engine)
        await engine.lifecycle.reject_action(action.action_id, "user-1")

        with pytest.raises(InvalidTransition, match="only pending"):
            await engine.lifecycle.modify_action(
                action.action_id, "user-1", ActionModifications(custom_note="x")
            )
        await engine.close()


# ── Expiration ────────────────────────────────────────────────────


class TestSweepExpired:
    @pytest.mark.asyncio
    async def test_sweep_expires_old_pending_actions(self):
        notifier = _Notifier()
        engine = await _engine(notifier=notifier)
        action = await _pending(engine)

        assert (await engine.lifecycle.sweep_expired(NOW + timedelta(hours=47))).expired == 0
        result = await engine.lifecycle.sweep_expired(LATER)

        assert result.expired == 1
        assert result.notified == 1
        assert result.action_ids == [action.action_id]
        assert notifier.expired == [("owner@example.com", [action.action_id])]
        stored = await engine.actions.get(action.action_id)
        assert stored.status == ActionStatus.EXPIRED
        assert stored.expired_at == LATER
        await engine.close()

    @pytest.mark.asyncio
    async def test_second_sweep_reports_nothing(self):
        notifier = _Notifier()
        engine = await _engine(notifier=notifier)
        await _pending(engine)
        await engine.lifecycle.sweep_expired(LATER)

        result = await engine.lifecycle.sweep_expired(LATER)

        assert result.expired == 0
        assert len(notifier.expired) == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_refund_actions_never_expire(self):
        engine = await _engine()
        await engine.actions.create(_refund_action(), day="2026-03-10", max_actions_day=50)

        result = await engine.lifecycle.sweep_expired(NOW + timedelta(days=30))

        assert result.expired == 0
        stored = await engine.actions.get("refund-1")
        assert stored.status == ActionStatus.PENDING_APPROVAL
        await engine.close()

    @pytest.mark.asyncio
    async def test_failed_notice_keeps_expiry(self):
        engine = await _engine(notifier=_Notifier(fail=True))
        action = await _pending(engine)

        result = await engine.lifecycle.sweep_expired(LATER)

        assert result.expired == 1
        assert result.notified == 0
        stored = await engine.actions.get(action.action_id)
        assert stored.status == ActionStatus.EXPIRED
        await engine.close()

"""プラン変更オーケストレーションのテスト"""
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AlreadyOnPlan,
    DataInvariantViolation,
    NoActiveSubscription,
    NoScheduledChange,
    PlanNotAvailable,
    ProviderRequestRejected,
    TransientProviderError,
)
from app.models.subscription_plan_change import SubscriptionPlanChange
from app.services import plan_change_service, stripe_service, subscription_service

from conftest import (
    PERIOD_END,
    PERIOD_START,
    PRICE_A,
    PRICE_B,
    add_subscription,
    price_detail,
    stripe_subscription,
)

PRICE_C = "price_plan_c"

PRICES = {
    PRICE_A: price_detail(PRICE_A, cuts=4, name="Plan A"),
    PRICE_B: price_detail(PRICE_B, cuts=8, name="Plan B"),
    PRICE_C: price_detail(PRICE_C, cuts=4, name="Plan C"),
}


def _lock_timeout():
    return OperationalError("UPDATE user_subscriptions", {}, Exception("lock wait timeout"))


@pytest.fixture
def stripe_api():
    """プラン変更で使う Stripe 呼び出しをまとめてスタブ化"""
    with patch.object(stripe_service, "retrieve_price_detail", side_effect=lambda price_id: PRICES[price_id]), \
            patch.object(stripe_service, "retrieve_subscription") as retrieve_subscription, \
            patch.object(stripe_service, "swap_subscription_price") as swap, \
            patch.object(stripe_service, "schedule_price_change", return_value={"id": "sub_sched_1"}) as schedule, \
            patch.object(stripe_service, "release_subscription_schedule") as release, \
            patch.object(stripe_service, "set_cancel_at_period_end") as set_cancel, \
            patch.object(stripe_service, "create_customer") as create_customer:
        api = MagicMock()
        api.retrieve_subscription = retrieve_subscription
        api.swap = swap
        api.schedule = schedule
        api.release = release
        api.set_cancel = set_cancel
        api.create_customer = create_customer
        yield api


class TestUpgrade:

    def test_plan_a_to_plan_b_applies_immediately(self, db, user, customer, stripe_api):
        add_subscription(db, user.id, cuts_included=4, cuts_used=3)
        stripe_api.retrieve_subscription.return_value = stripe_subscription(price_id=PRICE_A)

        result, rewards = plan_change_service.change_plan(db, user, PRICE_B)

        assert result.change_type == "upgrade"
        assert result.applied is True
        assert result.cuts_included == 8
        stripe_api.swap.assert_called_once_with("sub_1", "si_1", PRICE_B)
        stripe_api.schedule.assert_not_called()

        sub = subscription_service.get_subscription(db, user.id)
        assert (sub.stripe_price_id, sub.plan_name, sub.cuts_included, sub.cuts_used) == (PRICE_B, "Plan B", 8, 3)
        assert sub.has_scheduled_change is False

        assert len(rewards) == 1
        assert rewards[0].source == "plan_upgrade"
        assert rewards[0].points == 250

        history = db.query(SubscriptionPlanChange).one()
        assert (history.change_type, history.state, history.old_price_id, history.new_price_id) == (
            "upgrade", "applied", PRICE_A, PRICE_B,
        )

    def test_lateral_change_has_no_reward(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)
        stripe_api.retrieve_subscription.return_value = stripe_subscription()

        result, rewards = plan_change_service.change_plan(db, user, PRICE_C)

        assert result.change_type == "lateral"
        assert result.applied is True
        assert rewards == []

    def test_upgrade_releases_pending_schedule(self, db, user, customer, stripe_api):
        add_subscription(
            db, user.id, stripe_price_id=PRICE_C, plan_name="Plan C",
            scheduled_plan_name="Plan A", scheduled_price_id=PRICE_A, scheduled_effective_date=PERIOD_END,
        )
        stripe_api.retrieve_subscription.return_value = stripe_subscription(price_id=PRICE_C, schedule="sub_sched_1")

        plan_change_service.change_plan(db, user, PRICE_B)

        stripe_api.release.assert_called_once_with("sub_sched_1")
        sub = subscription_service.get_subscription(db, user.id)
        assert sub.has_scheduled_change is False
        assert sub.stripe_price_id == PRICE_B

    def test_stripe_failure_leaves_row_untouched(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)
        stripe_api.retrieve_subscription.return_value = stripe_subscription()
        stripe_api.swap.side_effect = TransientProviderError()

        with pytest.raises(TransientProviderError):
            plan_change_service.change_plan(db, user, PRICE_B)

        sub = subscription_service.get_subscription(db, user.id)
        assert sub.stripe_price_id == PRICE_A
        assert db.query(SubscriptionPlanChange).count() == 0

    def test_local_write_failure_returns_result_without_reward(self, db, user, customer, stripe_api, caplog):
        add_subscription(db, user.id)
        stripe_api.retrieve_subscription.return_value = stripe_subscription()

        with patch.object(subscription_service, "apply_price_change", side_effect=_lock_timeout()):
            result, rewards = plan_change_service.change_plan(db, user, PRICE_B)

        assert (result.change_type, result.applied, result.price_id) == ("upgrade", True, PRICE_B)
        assert rewards == []
        stripe_api.swap.assert_called_once()
        assert "ローカル反映失敗" in caplog.text
        assert subscription_service.get_subscription(db, user.id).stripe_price_id == PRICE_A
        assert db.query(SubscriptionPlanChange).count() == 0


class TestDowngrade:

    def test_plan_b_to_plan_a_schedules_at_period_end(self, db, user, customer, stripe_api):
        add_subscription(db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8, cuts_used=5)
        subscription = stripe_subscription(price_id=PRICE_B)
        stripe_api.retrieve_subscription.return_value = subscription

        result, rewards = plan_change_service.change_plan(db, user, PRICE_A)

        assert result.change_type == "downgrade"
        assert result.applied is False
        assert result.effective_date == PERIOD_END
        assert rewards == []
        stripe_api.schedule.assert_called_once_with(subscription, PRICE_A)
        stripe_api.swap.assert_not_called()

        sub = subscription_service.get_subscription(db, user.id)
        assert (sub.stripe_price_id, sub.plan_name, sub.cuts_included, sub.cuts_used) == (PRICE_B, "Plan B", 8, 5)
        assert (sub.scheduled_plan_name, sub.scheduled_price_id, sub.scheduled_effective_date) == (
            "Plan A", PRICE_A, PERIOD_END,
        )
        history = db.query(SubscriptionPlanChange).one()
        assert (history.state, history.stripe_schedule_id) == ("scheduled", "sub_sched_1")

    def test_same_scheduled_change_returns_existing(self, db, user, customer, catalog, stripe_api):
        add_subscription(
            db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8,
            scheduled_plan_name="Plan A", scheduled_price_id=PRICE_A, scheduled_effective_date=PERIOD_END,
        )

        result, _ = plan_change_service.change_plan(db, user, PRICE_A)

        assert result.applied is False
        assert result.cuts_included == 4
        assert result.effective_date == PERIOD_END
        stripe_api.retrieve_subscription.assert_not_called()
        stripe_api.schedule.assert_not_called()

    def test_local_write_failure_is_not_raised(self, db, user, customer, stripe_api, caplog):
        add_subscription(db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8)
        stripe_api.retrieve_subscription.return_value = stripe_subscription(price_id=PRICE_B)

        with patch.object(subscription_service, "set_scheduled_change", side_effect=_lock_timeout()):
            result, _ = plan_change_service.change_plan(db, user, PRICE_A)

        assert (result.change_type, result.applied) == ("downgrade", False)
        stripe_api.schedule.assert_called_once()
        assert "ローカル反映失敗" in caplog.text
        assert db.query(SubscriptionPlanChange).count() == 0


class TestRejections:

    def test_without_subscription(self, db, user, stripe_api):
        with pytest.raises(NoActiveSubscription):
            plan_change_service.change_plan(db, user, PRICE_B)

    def test_canceled_subscription(self, db, user, stripe_api):
        add_subscription(db, user.id, status="canceled")

        with pytest.raises(NoActiveSubscription):
            plan_change_service.change_plan(db, user, PRICE_B)

    def test_same_plan(self, db, user, stripe_api):
        add_subscription(db, user.id)

        with pytest.raises(AlreadyOnPlan):
            plan_change_service.change_plan(db, user, PRICE_A)

    def test_plan_without_cuts_metadata(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)
        PRICES["price_broken"] = price_detail("price_broken", cuts=0, name="Broken")
        try:
            with pytest.raises(PlanNotAvailable):
                plan_change_service.change_plan(db, user, "price_broken")
        finally:
            del PRICES["price_broken"]

    def test_inactive_plan(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)
        PRICES["price_retired"] = price_detail("price_retired", cuts=8, name="Retired", active=False)
        try:
            with pytest.raises(PlanNotAvailable):
                plan_change_service.change_plan(db, user, "price_retired")
        finally:
            del PRICES["price_retired"]

    def test_customer_mismatch(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)
        stripe_api.retrieve_subscription.return_value = stripe_subscription(customer="cus_someone_else")

        with pytest.raises(DataInvariantViolation):
            plan_change_service.change_plan(db, user, PRICE_B)
        stripe_api.swap.assert_not_called()


class TestCancelScheduledChange:

    def test_releases_schedule_and_clears_triple(self, db, user, customer, stripe_api):
        add_subscription(
            db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8,
            scheduled_plan_name="Plan A", scheduled_price_id=PRICE_A, scheduled_effective_date=PERIOD_END,
        )
        stripe_api.retrieve_subscription.return_value = stripe_subscription(price_id=PRICE_B, schedule="sub_sched_1")

        assert plan_change_service.cancel_scheduled_change(db, user) is True

        stripe_api.release.assert_called_once_with("sub_sched_1")
        sub = subscription_service.get_subscription(db, user.id)
        assert sub.has_scheduled_change is False
        assert (sub.stripe_price_id, sub.cuts_included) == (PRICE_B, 8)

    def test_without_scheduled_change(self, db, user, customer, stripe_api):
        add_subscription(db, user.id)

        with pytest.raises(NoScheduledChange):
            plan_change_service.cancel_scheduled_change(db, user)
        stripe_api.release.assert_not_called()

    def test_local_clear_failure_after_release_is_not_raised(self, db, user, customer, stripe_api, caplog):
        add_subscription(
            db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8,
            scheduled_plan_name="Plan A", scheduled_price_id=PRICE_A, scheduled_effective_date=PERIOD_END,
        )
        stripe_api.retrieve_subscription.return_value = stripe_subscription(price_id=PRICE_B, schedule="sub_sched_1")

        with patch.object(subscription_service, "clear_scheduled_change", side_effect=_lock_timeout()):
            assert plan_change_service.cancel_scheduled_change(db, user) is True

        stripe_api.release.assert_called_once_with("sub_sched_1")
        assert "ローカル反映失敗" in caplog.text
        # Stripe側は解除済み。ローカルは後続のWebhookで解消される
        assert subscription_service.get_subscription(db, user.id).scheduled_price_id == PRICE_A


class TestAutoRenewAndStart:

    def test_turning_off_auto_renew(self, db, user, stripe_api):
        add_subscription(db, user.id)

        summary = plan_change_service.set_auto_renew(db, user, auto_renew=False)

        stripe_api.set_cancel.assert_called_once_with("sub_1", True)
        assert summary.cancel_at_period_end is True

    def test_start_creates_customer_and_incomplete_subscription(self, db, user, stripe_api):
        stripe_api.create_customer.return_value = "cus_new"
        with patch.object(
            stripe_service, "create_incomplete_subscription", return_value=("sub_new", "pi_secret_123"),
        ) as create:
            response = plan_change_service.start_subscription(db, user, PRICE_A)

        create.assert_called_once_with("cus_new", PRICE_A)
        assert response.subscription_id == "sub_new"
        assert response.client_secret == "pi_secret_123"
        assert subscription_service.get_subscription(db, user.id) is None

    def test_start_with_active_subscription(self, db, user, stripe_api):
        add_subscription(db, user.id)

        with pytest.raises(AlreadyOnPlan):
            plan_change_service.start_subscription(db, user, PRICE_B)


class TestStripeCalls:
    """stripe_service が SDK に渡すパラメータ"""

    def test_swap_uses_always_invoice_and_keeps_anchor(self):
        with patch.object(stripe.Subscription, "modify") as modify:
            stripe_service.swap_subscription_price("sub_1", "si_1", PRICE_B)

        modify.assert_called_once_with(
            "sub_1",
            items=[{"id": "si_1", "price": PRICE_B}],
            proration_behavior="always_invoice",
            billing_cycle_anchor="unchanged",
        )

    def test_schedule_has_two_phases_ending_at_period_end(self):
        subscription = stripe_subscription(price_id=PRICE_B)
        created = {"id": "sub_sched_1", "phases": [{"start_date": subscription["current_period_start"]}]}
        with patch.object(stripe.SubscriptionSchedule, "create", return_value=MagicMock(**{
            "id": "sub_sched_1", "get.side_effect": created.get,
        })) as create, patch.object(stripe.SubscriptionSchedule, "modify") as modify:
            stripe_service.schedule_price_change(subscription, PRICE_A)

        create.assert_called_once_with(from_subscription="sub_1")
        kwargs = modify.call_args.kwargs
        assert kwargs["end_behavior"] == "release"
        current, following = kwargs["phases"]
        assert current["items"] == [{"price": PRICE_B, "quantity": 1}]
        assert current["start_date"] == subscription["current_period_start"]
        assert current["end_date"] == subscription["current_period_end"]
        assert following["items"] == [{"price": PRICE_A, "quantity": 1}]
        assert following["proration_behavior"] == "none"

    def test_connection_error_is_transient(self):
        with patch.object(stripe.Subscription, "retrieve", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(TransientProviderError):
                stripe_service.retrieve_subscription("sub_1")

    def test_card_error_is_rejected(self):
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch.object(stripe.Subscription, "modify", side_effect=error):
            with pytest.raises(ProviderRequestRejected):
                stripe_service.swap_subscription_price("sub_1", "si_1", PRICE_B)

    def test_period_timestamps_round_trip(self):
        assert stripe_service.from_timestamp(stripe_service.to_timestamp(PERIOD_START)) == PERIOD_START

"""HTTPルーターのテスト"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from app.core.exceptions import TransientProviderError
from app.models.reward_point import RewardPoint
from app.models.user import User
from app.routers import deps
from app.services import stripe_service

from conftest import (
    PERIOD_END,
    PRICE_A,
    PRICE_B,
    add_appointment,
    add_subscription,
    encode_event,
    price_detail,
    sign_payload,
    stripe_event,
    stripe_subscription,
)

ADMIN_HEADERS = {"X-Admin-Token": "admin-test-token"}


class TestStripeWebhookEndpoint:

    def _post(self, client, event, signature=None):
        payload = encode_event(event)
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": signature or sign_payload(payload), "content-type": "application/json"},
        )

    def test_bad_signature_is_400(self, anonymous_client):
        response = self._post(
            anonymous_client,
            stripe_event("customer.subscription.updated", stripe_subscription()),
            signature="t=1,v1=deadbeef",
        )

        assert response.status_code == 400

    def test_processed_event_is_200(self, anonymous_client, db, customer):
        with patch.object(stripe_service, "retrieve_subscription", return_value=stripe_subscription()), \
                patch.object(stripe_service, "retrieve_price_detail", return_value=price_detail()):
            response = self._post(anonymous_client, stripe_event("customer.subscription.created", stripe_subscription()))

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "processed"}
        # 新規購読のリワードはレスポンス後にバックグラウンドで付与される
        assert db.query(RewardPoint).filter(RewardPoint.source == "signup_bonus").count() == 1

    def test_transient_failure_is_500(self, anonymous_client, customer):
        with patch.object(stripe_service, "retrieve_subscription", side_effect=TransientProviderError()):
            response = self._post(anonymous_client, stripe_event("customer.subscription.updated", stripe_subscription()))

        assert response.status_code == 500

    def test_ignored_event_is_200(self, anonymous_client):
        response = self._post(anonymous_client, stripe_event("charge.succeeded", {"id": "ch_1"}))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


class TestSubscriptionEndpoints:

    def test_requires_login(self, anonymous_client):
        assert anonymous_client.get("/api/subscription").status_code == 401

    def test_summary(self, client, db, user):
        add_subscription(db, user.id, cuts_used=1)

        body = client.get("/api/subscription").json()

        assert body["plan_name"] == "Plan A"
        assert body["cuts_remaining"] == 3
        assert body["scheduled_change"] is None

    def test_summary_without_subscription_is_null(self, client):
        response = client.get("/api/subscription")

        assert response.status_code == 200
        assert response.json() is None

    def test_upgrade_awards_points_in_background(self, client, db, user, customer):
        add_subscription(db, user.id)
        with patch.object(stripe_service, "retrieve_price_detail", return_value=price_detail(PRICE_B, 8, "Plan B")), \
                patch.object(stripe_service, "retrieve_subscription", return_value=stripe_subscription()), \
                patch.object(stripe_service, "swap_subscription_price"):
            response = client.post("/api/subscription/change-plan", json={"new_price_id": PRICE_B})

        assert response.status_code == 200
        assert response.json()["change_type"] == "upgrade"
        db.expire_all()
        assert db.query(User).filter(User.id == user.id).one().total_points == 250

    def test_reward_failure_does_not_fail_plan_change(self, client, db, user, customer):
        add_subscription(db, user.id)
        with patch.object(stripe_service, "retrieve_price_detail", return_value=price_detail(PRICE_B, 8, "Plan B")), \
                patch.object(stripe_service, "retrieve_subscription", return_value=stripe_subscription()), \
                patch.object(stripe_service, "swap_subscription_price"), \
                patch("app.services.reward_service.award_points", side_effect=RuntimeError("boom")):
            response = client.post("/api/subscription/change-plan", json={"new_price_id": PRICE_B})

        assert response.status_code == 200
        assert response.json()["plan_name"] == "Plan B"

    def test_same_plan_error_shape(self, client, db, user):
        add_subscription(db, user.id)

        response = client.post("/api/subscription/change-plan", json={"new_price_id": PRICE_A})

        assert response.status_code == 400
        assert response.json()["code"] == "ALREADY_ON_PLAN"

    def test_provider_unavailable_is_503(self, client, db, user):
        add_subscription(db, user.id)
        with patch.object(stripe_service, "retrieve_price_detail", side_effect=TransientProviderError()):
            response = client.post("/api/subscription/change-plan", json={"new_price_id": PRICE_B})

        assert response.status_code == 503
        assert response.json()["code"] == "PROVIDER_UNAVAILABLE"

    def test_cancel_without_scheduled_change_is_404(self, client, db, user):
        add_subscription(db, user.id)

        response = client.delete("/api/subscription/scheduled-change")

        assert response.status_code == 404
        assert response.json()["code"] == "NO_SCHEDULED_CHANGE"

    def test_auto_renew(self, client, db, user):
        add_subscription(db, user.id)
        with patch.object(stripe_service, "set_cancel_at_period_end") as set_cancel:
            response = client.post("/api/subscription/auto-renew", json={"auto_renew": False})

        assert response.status_code == 200
        assert response.json()["cancel_at_period_end"] is True
        set_cancel.assert_called_once_with("sub_1", True)

    def test_validation_error_shape(self, client):
        response = client.post("/api/subscription/change-plan", json={})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestUsageEndpoints:

    def test_consume_then_quota_exceeded(self, client, db, user):
        add_subscription(db, user.id, cuts_included=1)
        first = add_appointment(db, user.id)
        second = add_appointment(db, user.id)

        ok = client.post("/api/usage/consume", json={"appointment_id": first.id})
        rejected = client.post("/api/usage/consume", json={"appointment_id": second.id})

        assert ok.status_code == 200
        assert ok.json() == {"cuts_used": 1, "cuts_remaining": 0}
        assert rejected.status_code == 409
        assert rejected.json()["code"] == "QUOTA_EXCEEDED"

    def test_refund(self, client, db, user):
        add_subscription(db, user.id, cuts_used=2)

        response = client.post("/api/usage/refund")

        assert response.json() == {"cuts_used": 1, "cuts_remaining": 3}


class TestPlanEndpoints:

    def test_public_plans(self, anonymous_client, catalog):
        body = anonymous_client.get("/api/plans").json()

        assert [p["price_id"] for p in body] == [PRICE_A, PRICE_B]
        assert body[1]["cuts_included_per_period"] == 8

    def test_admin_sync_requires_token(self, anonymous_client):
        assert anonymous_client.post("/api/admin/plans/sync").status_code == 403

    def test_admin_sync(self, anonymous_client):
        with patch.object(stripe_service, "iter_active_products", return_value=iter([])):
            response = anonymous_client.post("/api/admin/plans/sync", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"synced": 0}

    def test_admin_deactivate(self, anonymous_client, catalog):
        response = anonymous_client.post(f"/api/admin/plans/{PRICE_A}/deactivate", headers=ADMIN_HEADERS)
        missing = anonymous_client.post("/api/admin/plans/price_missing/deactivate", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert missing.status_code == 404


class TestHealthAndSession:

    def test_health(self, anonymous_client):
        with patch("app.routers.health.check_redis_connection", new=AsyncMock(return_value=True)):
            body = anonymous_client.get("/health").json()

        assert body["db"] == "connected"
        assert body["status"] == "ok"

    def test_session_cookie_resolves_user(self, db, user):
        redis = AsyncMock()
        redis.hgetall.return_value = {"user_id": str(user.id)}
        request = type("FakeRequest", (), {"cookies": {"session_id": "abc"}})()

        resolved = asyncio.run(deps.get_current_user(request, db=db, r=redis))

        assert resolved.id == user.id
        redis.hgetall.assert_awaited_once_with("session:abc")

    def test_missing_session_is_anonymous(self, db):
        redis = AsyncMock()
        redis.hgetall.return_value = {}
        request = type("FakeRequest", (), {"cookies": {"session_id": "expired"}})()

        assert asyncio.run(deps.get_current_user(request, db=db, r=redis)) is None

    def test_require_login_rejects_anonymous(self):
        with pytest.raises(HTTPException) as exc:
            asyncio.run(deps.require_login(None))
        assert exc.value.status_code == 401


def test_scheduled_change_visible_in_summary(client, db, user):
    add_subscription(
        db, user.id, stripe_price_id=PRICE_B, plan_name="Plan B", cuts_included=8,
        scheduled_plan_name="Plan A", scheduled_price_id=PRICE_A, scheduled_effective_date=PERIOD_END,
    )

    body = client.get("/api/subscription").json()

    assert body["scheduled_change"]["plan_name"] == "Plan A"
    assert body["scheduled_change"]["price_id"] == PRICE_A

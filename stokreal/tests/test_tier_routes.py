"""
Tests for the tier API routes and entitlement dependencies.

Tests cover:
- GET /api/v1/tier/status, /features/{name}/access, /features/{name}/threshold
- GET /api/v1/tier/validation/{name}, /validation/bulk, /history
- POST /api/v1/internal/validate-tier
- Feature access and creation limit dependencies (402 / 403 / headers)
- Error mapping (401 / 503)
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from stokreal import main
from stokreal.api.dependencies.entitlements import (
    check_analytics_access,
    check_product_creation,
    create_feature_access_check,
)
from stokreal.api.routes.tier import internal_router, router
from stokreal.database import session as session_module
from stokreal.database.session import get_db_session
from stokreal.models.user import SubscriptionPlan
from stokreal.repositories.feature_usage_repo import FeatureUsageRepository
from stokreal.services.subscription_lifecycle import SubscriptionLifecycle


# =============================================================================
# Fixtures
# =============================================================================


def _build_app() -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.include_router(internal_router)

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        user_id = request.headers.get("X-User-Id")
        if user_id:
            request.state.user_id = user_id
        return await call_next(request)

    check_product_slot_access = create_feature_access_check("product_slot")

    @app.get("/analytics")
    def analytics(db=Depends(check_analytics_access)):
        return {"ok": True}

    @app.get("/product-access")
    def product_access(db=Depends(check_product_slot_access)):
        return {"ok": True}

    @app.post("/products")
    def create_product(db=Depends(check_product_creation)):
        return {"created": True}

    return app


@pytest.fixture
def app(db_session, seeded_catalog):
    app = _build_app()

    def override_db_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_db_session
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _headers(user):
    return {"X-User-Id": user.id}


def _create_usage(db_session, user_id, feature_name, current_usage, usage_limit=None):
    FeatureUsageRepository(db_session).create(
        user_id, feature_name, usage_limit=usage_limit, initial_usage=current_usage
    )
    db_session.commit()


# =============================================================================
# Tier status and access
# =============================================================================


class TestTierStatusRoute:

    def test_requires_authentication(self, client):
        response = client.get("/api/v1/tier/status")
        assert response.status_code == 401

    def test_unknown_user_is_unauthorized(self, client):
        response = client.get("/api/v1/tier/status", headers={"X-User-Id": "ghost"})
        assert response.status_code == 401

    def test_free_user_status(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 12, 50)

        response = client.get("/api/v1/tier/status", headers=_headers(user))

        assert response.status_code == 200
        data = response.json()
        assert data["subscription_plan"] == "free"
        assert data["effective_plan"] == "free"
        assert data["grace_period_active"] is False
        assert data["tier_features"]["product_slot"] == {"limit": 50}
        assert data["tier_features"]["analytics_access"] == {"disabled": True}
        assert data["current_usage"]["product_slot"] == {"current": 12, "limit": 50}

    def test_grace_period_status(self, client, make_user, now):
        user = make_user(plan=SubscriptionPlan.PREMIUM, expires_at=now - timedelta(days=3))

        data = client.get("/api/v1/tier/status", headers=_headers(user)).json()

        assert data["subscription_state"] == "expired_in_grace"
        assert data["grace_period_active"] is True
        assert data["grace_period_expires_at"] is not None


class TestFeatureAccessRoute:

    def test_denial_is_reported_not_raised(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 50, 50)

        response = client.get("/api/v1/tier/features/product_slot/access", headers=_headers(user))

        assert response.status_code == 200
        data = response.json()
        assert data["access_granted"] is False
        assert data["reason"] == "usage_limit_exceeded"

    def test_threshold(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 40, 50)

        data = client.get(
            "/api/v1/tier/features/product_slot/threshold", headers=_headers(user)
        ).json()

        assert data["threshold_exceeded"] is True
        assert data["warning_message"] == "You are approaching your product_slot limit (80% used)"

    def test_threshold_out_of_range(self, client, make_user):
        user = make_user()
        response = client.get(
            "/api/v1/tier/features/product_slot/threshold?threshold=1.5", headers=_headers(user)
        )
        assert response.status_code == 422


class TestValidationRoutes:

    def test_feature_validation(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "categories", 17, 20)

        data = client.get("/api/v1/tier/validation/categories", headers=_headers(user)).json()

        assert data["can_proceed"] is True
        assert data["remaining"] == 3
        assert data["warning"] == "You're approaching your categories limit. Only 3 categories remaining."

    def test_bulk_validation(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 50, 50)

        data = client.get("/api/v1/tier/validation/bulk", headers=_headers(user)).json()

        assert data["products"]["can_proceed"] is False
        assert data["categories"]["can_proceed"] is True
        assert data["overall_access"] is False

    def test_history(self, client, db_session, make_user, now):
        user = make_user()
        SubscriptionLifecycle(db_session).upgrade_to_premium(user.id, expires_at=now + timedelta(days=30))

        data = client.get("/api/v1/tier/history", headers=_headers(user)).json()

        assert len(data) == 1
        assert data[0]["previous_plan"] == "free"
        assert data[0]["new_plan"] == "premium"
        assert data[0]["change_reason"] == "upgrade"


# =============================================================================
# Internal validation
# =============================================================================


class TestInternalValidateTier:

    def _post(self, client, user_id, required_tier="free", feature="product_slot"):
        return client.post("/api/v1/internal/validate-tier", json={
            "user_id": user_id,
            "required_tier": required_tier,
            "feature": feature,
            "action": "create",
        })

    def test_access_granted(self, client, make_user, now):
        user = make_user(plan=SubscriptionPlan.PREMIUM, expires_at=now + timedelta(days=30))

        response = self._post(client, user.id, "premium", "analytics_access")

        assert response.status_code == 200
        data = response.json()
        assert data["current_tier"] == "premium"
        assert data["access_granted"] is True

    def test_insufficient_tier(self, client, make_user):
        user = make_user()

        response = self._post(client, user.id, "premium", "analytics_access")

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["error"] == "TIER_UPGRADE_REQUIRED"
        assert detail["message"] == "Insufficient tier privileges"
        assert detail["current_tier"] == "free"
        assert detail["required_tier"] == "premium"

    def test_feature_not_available(self, client, make_user):
        user = make_user()

        detail = self._post(client, user.id, "free", "analytics_access").json()["detail"]

        assert detail["message"] == "Feature not available for your tier"

    def test_usage_limit_exceeded(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 50, 50)

        detail = self._post(client, user.id).json()["detail"]

        assert detail["message"] == "Usage limit exceeded"
        assert detail["upgrade_message"] == "Upgrade to Premium for unlimited product_slot"

    def test_inactive_user(self, client, make_user):
        user = make_user(is_active=False)

        response = self._post(client, user.id)

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "USER_INACTIVE"

    def test_lapsed_premium_is_free(self, client, make_user, now):
        user = make_user(plan=SubscriptionPlan.PREMIUM, expires_at=now - timedelta(days=10))

        response = self._post(client, user.id, "premium", "analytics_access")

        assert response.status_code == 403
        assert response.json()["detail"]["current_tier"] == "free"

    def test_unknown_user(self, client):
        assert self._post(client, "ghost").status_code == 401

    def test_invalid_tier(self, client, make_user):
        user = make_user()
        assert self._post(client, user.id, "enterprise").status_code == 422


# =============================================================================
# Dependencies
# =============================================================================


class TestEntitlementDependencies:

    def test_feature_unavailable_is_payment_required(self, client, make_user):
        user = make_user()

        response = client.get("/analytics", headers=_headers(user))

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error"] == "TIER_UPGRADE_REQUIRED"
        assert detail["reason"] == "feature_not_available"

    def test_feature_available(self, client, make_user, now):
        user = make_user(plan=SubscriptionPlan.PREMIUM, expires_at=now + timedelta(days=30))
        assert client.get("/analytics", headers=_headers(user)).status_code == 200

    def test_usage_exceeded_is_forbidden(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 50, 50)

        response = client.get("/product-access", headers=_headers(user))

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "TIER_LIMIT_EXCEEDED"

    def test_creation_limit_reached(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 50, 50)

        response = client.post("/products", headers=_headers(user))

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["error"] == "TIER_LIMIT_EXCEEDED"
        assert detail["message"] == "Products limit reached. Maximum 50 products allowed for free tier."

    def test_creation_warning_headers(self, client, db_session, make_user):
        user = make_user()
        _create_usage(db_session, user.id, "product_slot", 45, 50)

        response = client.post("/products", headers=_headers(user))

        assert response.status_code == 200
        assert response.headers["X-Tier-Warning"] == (
            "You're approaching your products limit. Only 5 products remaining."
        )
        assert response.headers["X-Tier-Upgrade-Prompt"] == (
            "Upgrade to Premium for unlimited products and advanced features."
        )

    def test_creation_without_warning(self, client, make_user):
        user = make_user()

        response = client.post("/products", headers=_headers(user))

        assert response.status_code == 200
        assert "X-Tier-Warning" not in response.headers


class TestErrorMapping:

    def test_storage_failure_is_service_unavailable(self):
        app = _build_app()
        broken_session = MagicMock()
        broken_session.query.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        app.dependency_overrides[get_db_session] = lambda: broken_session

        response = TestClient(app).get("/api/v1/tier/status", headers={"X-User-Id": "user-1"})

        assert response.status_code == 503

    def test_database_not_configured(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr(session_module, "_engine", None)
        monkeypatch.setattr(session_module, "_SessionLocal", None)

        response = TestClient(_build_app()).get("/api/v1/tier/status", headers={"X-User-Id": "user-1"})

        assert response.status_code == 503


class TestApplication:

    def test_health(self):
        response = TestClient(main.create_app()).get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_scheduler_not_built_when_disabled(self, monkeypatch):
        monkeypatch.setenv("ENABLE_TIER_SCHEDULER", "false")
        assert main._build_scheduler() is None

    def test_scheduler_not_built_without_database(self, monkeypatch):
        monkeypatch.setenv("ENABLE_TIER_SCHEDULER", "true")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr(session_module, "_engine", None)
        monkeypatch.setattr(session_module, "_SessionLocal", None)
        assert main._build_scheduler() is None

"""Tests for the HTTP API surface."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from booster_beacon.api import app, get_dashboard_service, get_db, get_push_service
from booster_beacon.errors import DatabaseError, NotFoundError, ValidationError

USER_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
ALERT_ID = "2f1c0d4e-8a9b-4c3d-9e2f-1a2b3c4d5e6f"
OTHER_ALERT_ID = "5a6b7c8d-9e0f-4a1b-8c2d-3e4f5a6b7c8d"
PRODUCT_ID = "0b1c2d3e-4f5a-4b6c-9d7e-8f9a0b1c2d3e"
HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def dashboard():
    service = MagicMock()
    service.get_dashboard_data = AsyncMock(return_value={"stats": {"totalWatches": 2}})
    service.get_predictive_insights = AsyncMock(return_value=[{"productId": "p1"}])
    service.get_portfolio_data = AsyncMock(return_value={"totalValue": 10.0})
    service.get_consolidated_dashboard_data = AsyncMock(
        return_value={"dashboard": {}, "portfolio": {}, "insights": [], "timestamp": "t"}
    )
    service.get_dashboard_updates = AsyncMock(
        return_value={"newAlerts": [], "watchUpdates": [], "timestamp": "t"}
    )
    return service


@pytest.fixture
def push():
    service = MagicMock()
    service.vapid_public_key = "BPublicKey"
    service.subscribe = AsyncMock(return_value={"success": True})
    service.unsubscribe = AsyncMock(return_value={"success": True})
    service.send_test_notification = AsyncMock(return_value={"success": True, "sent": 1, "failed": 0})
    service.get_user_push_stats = AsyncMock(return_value={"subscriptionCount": 1})
    return service


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(dashboard, push, session):
    async def override_db():
        yield session

    app.dependency_overrides[get_dashboard_service] = lambda: dashboard
    app.dependency_overrides[get_push_service] = lambda: push
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


class TestHealthAndAuth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["service"] == "booster-beacon"

    def test_missing_user_header(self, client):
        response = client.get("/api/dashboard")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "AUTHENTICATION_REQUIRED"
        assert "timestamp" in error

    def test_malformed_user_header(self, client, dashboard):
        response = client.get("/api/dashboard", headers={"X-User-Id": "not-a-uuid"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"
        dashboard.get_dashboard_data.assert_not_awaited()


class TestDashboardRoutes:
    def test_dashboard(self, client, dashboard):
        response = client.get("/api/dashboard", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"dashboard": {"stats": {"totalWatches": 2}}}
        dashboard.get_dashboard_data.assert_awaited_once_with(USER_ID)

    def test_insights_parses_product_ids(self, client, dashboard):
        response = client.get("/api/dashboard/insights?productIds=p1, p2,,", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"insights": [{"productId": "p1"}]}
        dashboard.get_predictive_insights.assert_awaited_once_with(USER_ID, ["p1", "p2"])

    def test_invalid_product_ids(self, client, dashboard):
        dashboard.get_predictive_insights.side_effect = ValidationError(
            "Invalid product ID format: a b",
            code="INVALID_PRODUCT_IDS",
            details={"invalidIds": ["a b"]},
        )

        response = client.get("/api/dashboard/insights?productIds=a b", headers=HEADERS)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_PRODUCT_IDS"
        assert error["details"] == {"invalidIds": ["a b"]}

    def test_consolidated(self, client, dashboard):
        response = client.get("/api/dashboard/consolidated", headers=HEADERS)

        assert response.status_code == 200
        assert set(response.json()) == {"dashboard", "portfolio", "insights", "timestamp"}
        dashboard.get_consolidated_dashboard_data.assert_awaited_once_with(USER_ID, None)

    def test_portfolio(self, client):
        response = client.get("/api/dashboard/portfolio", headers=HEADERS)

        assert response.json() == {"portfolio": {"totalValue": 10.0}}

    def test_updates_rejects_bad_since(self, client):
        response = client.get("/api/dashboard/updates?since=yesterday", headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_updates(self, client, dashboard):
        response = client.get("/api/dashboard/updates?since=2026-10-01T00:00:00Z", headers=HEADERS)

        assert response.status_code == 200
        assert "updates" in response.json()
        since = dashboard.get_dashboard_updates.await_args.args[1]
        assert since.year == 2026

    def test_unknown_user(self, client, dashboard):
        dashboard.get_dashboard_data.side_effect = NotFoundError("User", USER_ID)

        response = client.get("/api/dashboard", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"

    def test_database_error(self, client, dashboard):
        dashboard.get_portfolio_data.side_effect = DatabaseError(cause=RuntimeError("conn reset"))

        response = client.get("/api/dashboard/portfolio", headers=HEADERS)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "DATABASE_ERROR"
        assert "conn reset" not in response.text

    def test_unexpected_error_hides_details(self, client, dashboard):
        dashboard.get_dashboard_data.side_effect = KeyError("secret internals")

        response = client.get("/api/dashboard", headers=HEADERS)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "secret internals" not in response.text


class TestNotificationRoutes:
    SUBSCRIPTION = {"endpoint": "https://push.example/a", "keys": {"p256dh": "k", "auth": "a"}}

    def test_subscribe(self, client, push):
        response = client.post("/api/notifications/subscribe", json=self.SUBSCRIPTION, headers=HEADERS)

        assert response.status_code == 201
        assert response.json() == {"message": "Successfully subscribed to push notifications"}
        push.subscribe.assert_awaited_once_with(USER_ID, self.SUBSCRIPTION)

    def test_subscribe_invalid_body(self, client, push):
        response = client.post(
            "/api/notifications/subscribe", json={"endpoint": "https://push.example/a"}, headers=HEADERS
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        push.subscribe.assert_not_awaited()

    def test_subscribe_failure(self, client, push):
        push.subscribe.return_value = {"success": False, "error": "User not found"}

        response = client.post("/api/notifications/subscribe", json=self.SUBSCRIPTION, headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SUBSCRIPTION_FAILED"
        assert response.json()["error"]["message"] == "User not found"

    def test_unsubscribe(self, client, push):
        response = client.post(
            "/api/notifications/unsubscribe", json={"endpoint": "https://push.example/a"}, headers=HEADERS
        )

        assert response.status_code == 200
        push.unsubscribe.assert_awaited_once_with(USER_ID, "https://push.example/a")

    def test_vapid_key(self, client):
        response = client.get("/api/notifications/vapid-public-key")

        assert response.json() == {"publicKey": "BPublicKey"}

    def test_vapid_key_not_configured(self, client, push):
        push.vapid_public_key = None

        response = client.get("/api/notifications/vapid-public-key")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "PUSH_NOT_CONFIGURED"

    def test_push_stats(self, client):
        response = client.get("/api/notifications/stats", headers=HEADERS)

        assert response.json() == {"stats": {"subscriptionCount": 1}}


class TestAlertRoutes:
    def test_user_alert_stats(self, client, session):
        query_cls = MagicMock()
        query_cls.return_value.get_user_alert_stats = AsyncMock(return_value={"total": 3})

        with patch("booster_beacon.api.AlertStatsQuery", query_cls):
            response = client.get("/api/alerts/stats", headers=HEADERS)

        assert response.json() == {"stats": {"total": 3}}
        query_cls.assert_called_once_with(session)
        query_cls.return_value.get_user_alert_stats.assert_awaited_once_with(USER_ID)

    def test_system_alert_stats(self, client):
        query_cls = MagicMock()
        query_cls.return_value.get_system_alert_stats = AsyncMock(return_value={"totalAlerts": 9})

        with patch("booster_beacon.api.AlertStatsQuery", query_cls):
            response = client.get("/api/alerts/system-stats")

        assert response.json() == {"stats": {"totalAlerts": 9}}

    def test_mark_read_rejects_other_users_alert(self, client):
        repo_cls = MagicMock()
        repo_cls.return_value.get_by_id = AsyncMock(return_value=MagicMock(user_id="someone-else"))
        repo_cls.return_value.mark_as_read = AsyncMock(return_value=True)

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.patch(f"/api/alerts/{ALERT_ID}/read", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ALERT_NOT_FOUND"
        repo_cls.return_value.mark_as_read.assert_not_awaited()

    def test_mark_clicked(self, client):
        repo_cls = MagicMock()
        repo_cls.return_value.get_by_id = AsyncMock(return_value=MagicMock(user_id=USER_ID))
        repo_cls.return_value.mark_as_clicked = AsyncMock(return_value=True)

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.patch(f"/api/alerts/{ALERT_ID}/clicked", headers=HEADERS)

        assert response.status_code == 200
        repo_cls.return_value.mark_as_clicked.assert_awaited_once_with(ALERT_ID)

    def test_bulk_read(self, client):
        repo_cls = MagicMock()
        repo_cls.return_value.bulk_mark_as_read = AsyncMock(return_value=2)

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.patch(
                "/api/alerts/read", json={"alertIds": [ALERT_ID, OTHER_ALERT_ID]}, headers=HEADERS
            )

        assert response.json() == {"updated": 2}
        repo_cls.return_value.bulk_mark_as_read.assert_awaited_once_with(
            [ALERT_ID, OTHER_ALERT_ID], user_id=USER_ID
        )

    def test_list_alerts(self, client):
        alert = MagicMock()
        alert.to_dict.return_value = {"id": "a1"}
        repo_cls = MagicMock()
        repo_cls.return_value.find_by_user_id = AsyncMock(
            return_value={"data": [alert], "total": 1, "page": 1, "limit": 20, "totalPages": 1}
        )

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.get("/api/alerts?type=restock&unread=true", headers=HEADERS)

        assert response.json()["data"] == [{"id": "a1"}]
        kwargs = repo_cls.return_value.find_by_user_id.await_args.kwargs
        assert kwargs["alert_type"] == "restock"
        assert kwargs["unread_only"] is True

    def test_store_failure_renders_database_error(self, client, session):
        session.execute = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection refused"))
        )

        response = client.patch(f"/api/alerts/{ALERT_ID}/read", headers=HEADERS)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "DATABASE_ERROR"
        assert "connection refused" not in response.text

    def test_malformed_alert_id_is_not_found(self, client):
        repo_cls = MagicMock()
        repo_cls.return_value.get_by_id = AsyncMock(return_value=None)

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.patch("/api/alerts/not-a-uuid/read", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ALERT_NOT_FOUND"
        repo_cls.return_value.get_by_id.assert_not_awaited()

    def test_bulk_read_rejects_malformed_ids(self, client):
        repo_cls = MagicMock()
        repo_cls.return_value.bulk_mark_as_read = AsyncMock(return_value=0)

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.patch(
                "/api/alerts/read", json={"alertIds": [ALERT_ID, "bogus"]}, headers=HEADERS
            )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_ALERT_IDS"
        assert error["details"] == {"invalidIds": ["bogus"]}
        repo_cls.return_value.bulk_mark_as_read.assert_not_awaited()

    def test_product_history_scoped_to_caller(self, client):
        alert = MagicMock()
        alert.to_dict.return_value = {"id": ALERT_ID}
        repo_cls = MagicMock()
        repo_cls.return_value.find_by_product_id = AsyncMock(return_value=[alert])

        with patch("booster_beacon.api.AlertRepository", repo_cls):
            response = client.get(f"/api/products/{PRODUCT_ID}/alerts?days=7", headers=HEADERS)

        assert response.json() == {"alerts": [{"id": ALERT_ID}]}
        repo_cls.return_value.find_by_product_id.assert_awaited_once_with(
            PRODUCT_ID, days=7, user_id=USER_ID
        )

    def test_product_history_rejects_malformed_id(self, client):
        response = client.get("/api/products/not-a-uuid/alerts", headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PRODUCT_ID"


class TestSystemRoutes:
    def test_circuit_breakers(self, client):
        registry = MagicMock()
        registry.all_metrics.return_value = {"hooks.example.com": {"state": "OPEN"}}

        with patch("booster_beacon.api.breaker_registry", registry):
            response = client.get("/api/system/circuit-breakers")

        assert response.status_code == 200
        assert response.json() == {"breakers": {"hooks.example.com": {"state": "OPEN"}}}

"""HTTP API for the BoosterBeacon dashboard, alerts and push notifications."""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon import __version__
from booster_beacon.alerts.push import PushNotificationService
from booster_beacon.analytics import AlertStatsQuery
from booster_beacon.config import settings
from booster_beacon.db.database import close_db, get_db
from booster_beacon.db.repositories import AlertRepository
from booster_beacon.errors import (
    AuthenticationRequired,
    BeaconError,
    DatabaseError,
    NotFoundError,
    ServiceUnavailable,
    ValidationError,
    utc_timestamp,
)
from booster_beacon.resilience import breaker_registry
from booster_beacon.services import DashboardService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.scheduler_enabled:
        from booster_beacon.jobs import create_scheduler

        scheduler = create_scheduler()
        scheduler.start()
        logger.info("Alert scheduler started")
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await close_db()


app = FastAPI(
    title="BoosterBeacon API",
    description="Collector dashboard, alert statistics and push notifications",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ================== ERROR HANDLERS ==================

@app.exception_handler(BeaconError)
async def beacon_error_handler(request: Request, exc: BeaconError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=ValidationError("Request validation failed", details={"errors": errors}).to_envelope(),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content=DatabaseError(cause=exc).to_envelope())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "timestamp": utc_timestamp(),
            }
        },
    )


# ================== DEPENDENCIES ==================

_dashboard_service: DashboardService | None = None
_push_service: PushNotificationService | None = None


def get_dashboard_service() -> DashboardService:
    global _dashboard_service
    if _dashboard_service is None:
        _dashboard_service = DashboardService()
    return _dashboard_service


def get_push_service() -> PushNotificationService:
    global _push_service
    if _push_service is None:
        _push_service = PushNotificationService()
    return _push_service


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        return False
    return True


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Principal forwarded by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationRequired()
    if not is_uuid(x_user_id.strip()):
        raise AuthenticationRequired("Invalid user identity")
    return x_user_id.strip()


def parse_id_list(raw: Optional[str]) -> Optional[List[str]]:
    """Split a comma separated query value; ``None`` when nothing is left."""
    if not raw:
        return None
    ids = [part.strip() for part in raw.split(",") if part.strip()]
    return ids or None


# Request models
class PushKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class SubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1)
    keys: PushKeys


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1)


class BulkReadRequest(BaseModel):
    alertIds: List[str] = Field(min_length=1, max_length=100)


# ================== HEALTH ==================

@app.get("/health")
async def health():
    return {"status": "ok", "service": "booster-beacon", "version": __version__}


# ================== DASHBOARD ==================

@app.get("/api/dashboard")
async def get_dashboard(
    user_id: str = Depends(get_current_user_id),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Stats, recent alerts, watched products and insights for the caller."""
    return {"dashboard": await service.get_dashboard_data(user_id)}


@app.get("/api/dashboard/consolidated")
async def get_consolidated_dashboard(
    productIds: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Dashboard, portfolio and insights in a single round trip."""
    return await service.get_consolidated_dashboard_data(user_id, parse_id_list(productIds))


@app.get("/api/dashboard/insights")
async def get_insights(
    productIds: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: DashboardService = Depends(get_dashboard_service),
):
    insights = await service.get_predictive_insights(user_id, parse_id_list(productIds))
    return {"insights": insights}


@app.get("/api/dashboard/portfolio")
async def get_portfolio(
    user_id: str = Depends(get_current_user_id),
    service: DashboardService = Depends(get_dashboard_service),
):
    return {"portfolio": await service.get_portfolio_data(user_id)}


@app.get("/api/dashboard/updates")
async def get_updates(
    since: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Alerts and watch changes newer than ``since`` (default: last 5 minutes)."""
    return {"updates": await service.get_dashboard_updates(user_id, since)}


# ================== NOTIFICATIONS ==================

@app.post("/api/notifications/subscribe", status_code=201)
async def subscribe_push(
    request: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    push: PushNotificationService = Depends(get_push_service),
):
    result = await push.subscribe(user_id, request.model_dump())
    if not result["success"]:
        raise ValidationError(
            result.get("error") or "Failed to subscribe to push notifications",
            code="SUBSCRIPTION_FAILED",
        )
    return {"message": "Successfully subscribed to push notifications"}


@app.post("/api/notifications/unsubscribe")
async def unsubscribe_push(
    request: UnsubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    push: PushNotificationService = Depends(get_push_service),
):
    result = await push.unsubscribe(user_id, request.endpoint)
    if not result["success"]:
        raise ValidationError(
            result.get("error") or "Failed to unsubscribe from push notifications",
            code="UNSUBSCRIBE_FAILED",
        )
    return {"message": "Successfully unsubscribed from push notifications"}


@app.get("/api/notifications/vapid-public-key")
async def get_vapid_public_key(push: PushNotificationService = Depends(get_push_service)):
    if not push.vapid_public_key:
        raise ServiceUnavailable("Push notifications are not configured", code="PUSH_NOT_CONFIGURED")
    return {"publicKey": push.vapid_public_key}


@app.post("/api/notifications/test")
async def send_test_push(
    user_id: str = Depends(get_current_user_id),
    push: PushNotificationService = Depends(get_push_service),
):
    return await push.send_test_notification(user_id)


@app.get("/api/notifications/stats")
async def get_push_stats(
    user_id: str = Depends(get_current_user_id),
    push: PushNotificationService = Depends(get_push_service),
):
    return {"stats": await push.get_user_push_stats(user_id)}


# ================== ALERTS ==================

@app.get("/api/alerts/stats")
async def get_alert_stats(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    """Totals, per-type and per-status counts, CTR and recent activity."""
    return {"stats": await AlertStatsQuery(session).get_user_alert_stats(user_id)}


@app.get("/api/alerts/system-stats")
async def get_system_alert_stats(session: AsyncSession = Depends(get_db)):
    return {"stats": await AlertStatsQuery(session).get_system_alert_stats()}


@app.get("/api/alerts")
async def list_alerts(
    status: Optional[str] = None,
    alert_type: Optional[str] = Query(None, alias="type"),
    unread: bool = False,
    search: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    result = await AlertRepository(session).find_by_user_id(
        user_id,
        status=status,
        alert_type=alert_type,
        unread_only=unread,
        search=search,
        start_date=startDate,
        end_date=endDate,
        page=page,
        limit=limit,
    )
    return {**result, "data": [a.to_dict() for a in result["data"]]}


@app.patch("/api/alerts/read")
async def bulk_mark_read(
    request: BulkReadRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    invalid = [alert_id for alert_id in request.alertIds if not is_uuid(alert_id)]
    if invalid:
        raise ValidationError(
            "Invalid alert ID format", code="INVALID_ALERT_IDS", details={"invalidIds": invalid}
        )
    updated = await AlertRepository(session).bulk_mark_as_read(request.alertIds, user_id=user_id)
    return {"updated": updated}


async def _owned_alert(repo: AlertRepository, alert_id: str, user_id: str):
    if not is_uuid(alert_id):
        raise NotFoundError("Alert", alert_id)
    alert = await repo.get_by_id(alert_id)
    if alert is None or str(alert.user_id) != user_id:
        raise NotFoundError("Alert", alert_id)
    return alert


@app.patch("/api/alerts/{alert_id}/read")
async def mark_alert_read(
    alert_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    repo = AlertRepository(session)
    await _owned_alert(repo, alert_id, user_id)
    await repo.mark_as_read(alert_id)
    return {"message": "Alert marked as read"}


@app.patch("/api/alerts/{alert_id}/clicked")
async def mark_alert_clicked(
    alert_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    repo = AlertRepository(session)
    await _owned_alert(repo, alert_id, user_id)
    await repo.mark_as_clicked(alert_id)
    return {"message": "Alert marked as clicked"}


@app.get("/api/products/{product_id}/alerts")
async def get_product_alert_history(
    product_id: str,
    days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    """The caller's own alerts for a product over the last ``days``."""
    if not is_uuid(product_id):
        raise ValidationError("Invalid product ID format", code="INVALID_PRODUCT_ID")
    alerts = await AlertRepository(session).find_by_product_id(
        product_id, days=days, user_id=user_id
    )
    return {"alerts": [a.to_dict() for a in alerts]}


# ================== SYSTEM ==================

@app.get("/api/system/circuit-breakers")
async def get_circuit_breakers():
    """State and counters of every outbound endpoint breaker."""
    return {"breakers": breaker_registry.all_metrics()}

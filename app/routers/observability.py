from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import func, text
import time
import psutil
import logging
from datetime import timedelta

from app.db import get_db
from app.config import settings
from app.models import AppUser, SubscriptionStatus, utc_now
from app.services.event_ledger import EventLedger

router = APIRouter()
logger = logging.getLogger(__name__)

@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": utc_now().isoformat()}

@router.get("/healthz")
async def health_alias():
    """Health check alias for platforms that expect /healthz."""
    return await basic_health_check()

@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check for container orchestration.
    Returns 200 if the database is reachable.
    """
    checks = {}
    all_healthy = True

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        all_healthy = False

    checks["stripe"] = {"status": "configured" if settings.stripe_webhook_secret else "missing_webhook_secret"}

    response_data = {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": utc_now().isoformat()
    }

    if not all_healthy:
        raise HTTPException(status_code=503, detail=response_data)

    return response_data

@router.get("/livez")
async def liveness_check():
    """
    Liveness check.
    Should only fail if the application is in an unrecoverable state.
    """
    try:
        memory = psutil.virtual_memory()
        if memory.percent > 95:
            raise RuntimeError(f"Critical memory usage: {memory.percent}%")

        disk = psutil.disk_usage('/')
        disk_percent = (disk.used / disk.total) * 100
        if disk_percent > 95:
            raise RuntimeError(f"Critical disk usage: {disk_percent:.1f}%")

        return {
            "status": "alive",
            "memory_percent": memory.percent,
            "disk_percent": round(disk_percent, 1),
            "timestamp": utc_now().isoformat()
        }
    except RuntimeError as e:
        logger.critical(f"Liveness check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Application not alive: {str(e)}")

@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """
    Prometheus-style metrics for the webhook ledger and subscriptions.

    ``webhook_events_failed`` and ``webhook_events_stuck`` are the rows that
    need manual reprocessing; alert on them.
    """
    now = utc_now()
    ledger = EventLedger(db)
    try:
        events_24h = ledger.count_by_status(since=now - timedelta(hours=24))
        stuck = ledger.count_stuck(older_than=now - timedelta(minutes=settings.stuck_event_minutes))

        users_by_status = {status.value: 0 for status in SubscriptionStatus}
        rows = db.query(AppUser.subscription_status, func.count(AppUser.auth_uid)).filter(
            AppUser.deleted_at.is_(None)
        ).group_by(AppUser.subscription_status).all()
        for status, count in rows:
            users_by_status[SubscriptionStatus(status).value] = count
    except Exception as e:
        logger.error(f"Failed to generate metrics: {e}")
        raise HTTPException(status_code=500, detail="Metrics generation failed")

    lines = [
        "# HELP billing_webhook_events_24h Webhook ledger rows received in the last 24 hours by status",
        "# TYPE billing_webhook_events_24h gauge",
    ]
    for status, count in events_24h.items():
        lines.append(f'billing_webhook_events_24h{{status="{status}"}} {count}')
    lines += [
        "",
        "# HELP billing_webhook_events_stuck Ledger rows left in processing beyond the stuck threshold",
        "# TYPE billing_webhook_events_stuck gauge",
        f"billing_webhook_events_stuck {stuck}",
        "",
        "# HELP billing_users_by_subscription_status Users by subscription status",
        "# TYPE billing_users_by_subscription_status gauge",
    ]
    for status, count in users_by_status.items():
        lines.append(f'billing_users_by_subscription_status{{status="{status}"}} {count}')

    return Response(content="\n".join(lines) + "\n", media_type="text/plain")

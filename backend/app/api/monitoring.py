"""Monitoring API routes for health checks and metrics"""
from fastapi import APIRouter, Response, Depends
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.metrics import ledger_halted_gauge, unprocessed_events_gauge
from app.db.redis import ping
from app.db.session import get_db
from app.services.event_store import count_unprocessed
from app.services.ledger_auth import get_ledger_auth_state

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics endpoint - updates gauges before export"""
    unprocessed_events_gauge.set(count_unprocessed(db))
    ledger_halted_gauge.set(1 if get_ledger_auth_state().is_halted() else 0)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "error"
    redis_status = "ok" if ping() else "error"
    status = "healthy" if database == "ok" else "unhealthy"
    return {"status": status, "database": database, "redis": redis_status}

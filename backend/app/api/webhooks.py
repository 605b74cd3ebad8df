"""BTCPay webhook API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import BTCPAY_SIGNATURE_HEADER
from app.core.metrics import webhook_deliveries_counter
from app.core.security import require_operator
from app.db.session import get_db
from app.schemas.webhooks import (
    WebhookConfigRequest, WebhookEnsureRequest, WebhookReceipt, WebhookStatusResponse
)
from app.services.receiver import (
    ReceiveResult, WebhookSecretMissing, receive_delivery, save_webhook_config
)
from app.services.webhook_setup import (
    WebhookSetupError, delete_webhook, ensure_webhook, get_webhook_status, sync_webhook_secrets
)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")

REJECTION_STATUS_CODES = {
    ReceiveResult.BAD_SIGNATURE: 401,
    ReceiveResult.MALFORMED: 400,
}


@router.post("/btcpay", response_model=WebhookReceipt)
async def btcpay_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive a BTCPay Server webhook delivery

    Only verifies, stores and acknowledges; reconciliation happens in the worker.
    A non-2xx reply makes BTCPay redeliver later.
    """
    signature = request.headers.get(BTCPAY_SIGNATURE_HEADER)
    if not signature:
        webhook_deliveries_counter.labels(result=ReceiveResult.MALFORMED.value).inc()
        webhook_logger.warning("Rejected webhook delivery: missing BTCPay-Sig header")
        raise HTTPException(400, "Missing BTCPay-Sig header")

    raw_body = await request.body()

    try:
        receipt = receive_delivery(raw_body, signature, db)
    except WebhookSecretMissing as e:
        raise HTTPException(500, str(e))
    except SQLAlchemyError as e:
        db.rollback()
        webhook_logger.error(f"Failed to persist webhook delivery: {e}", exc_info=True)
        webhook_deliveries_counter.labels(result="persistence-failure").inc()
        raise HTTPException(503, "Delivery could not be stored, retry later")

    status_code = REJECTION_STATUS_CODES.get(receipt.result)
    if status_code is not None:
        return JSONResponse(
            status_code=status_code,
            content={"status": receipt.result.value, "detail": receipt.detail}
        )

    return WebhookReceipt(
        status=receipt.result.value,
        delivery_id=receipt.delivery_id,
        event_type=receipt.event_type,
        invoice_id=receipt.invoice_id
    )


@router.put("/configs/{webhook_id}")
def put_webhook_config(
    webhook_id: str,
    request_data: WebhookConfigRequest,
    _operator: None = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Store the signing secret of a BTCPay webhook (operator only)"""
    if request_data.webhook_id != webhook_id:
        raise HTTPException(400, "webhook_id in body does not match the URL")
    try:
        config = save_webhook_config(
            webhook_id=webhook_id,
            store_id=request_data.store_id,
            url=request_data.url,
            secret=request_data.secret,
            events=request_data.events,
            active=request_data.active,
            db=db
        )
    except ValueError as e:
        # Encryption key missing or invalid
        raise HTTPException(500, str(e))
    return {
        "webhook_id": config.webhook_id,
        "store_id": config.store_id,
        "url": config.url,
        "events": config.events,
        "active": config.active,
    }


@router.get("/status", response_model=WebhookStatusResponse)
async def webhook_status(url: Optional[str] = None, _operator: None = Depends(require_operator)):
    """Which required events BTCPay delivers to url (default BTCPAY_WEBHOOK_URL)"""
    try:
        status = await get_webhook_status(url)
    except WebhookSetupError as e:
        raise HTTPException(400, str(e))
    return status.to_dict()


@router.post("/ensure", response_model=WebhookStatusResponse)
async def ensure_webhook_endpoint(
    request_data: Optional[WebhookEnsureRequest] = None,
    _operator: None = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Register a webhook for every required event that is not yet delivered"""
    try:
        status = await ensure_webhook(db, url=request_data.url if request_data else None)
    except WebhookSetupError as e:
        raise HTTPException(400, str(e))
    except ValueError as e:
        # Encryption key missing or invalid
        raise HTTPException(500, str(e))
    return status.to_dict()


@router.post("/sync")
async def sync_webhooks_endpoint(_operator: None = Depends(require_operator), db: Session = Depends(get_db)):
    """Refresh stored webhook configs from BTCPay"""
    try:
        synced = await sync_webhook_secrets(db)
    except WebhookSetupError as e:
        raise HTTPException(502, str(e))
    except ValueError as e:
        raise HTTPException(500, str(e))
    return {"synced": synced}


@router.delete("/configs/{webhook_id}")
async def delete_webhook_endpoint(
    webhook_id: str,
    _operator: None = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Delete a webhook in BTCPay along with its stored secret"""
    try:
        deleted = await delete_webhook(webhook_id, db)
    except WebhookSetupError as e:
        raise HTTPException(502, str(e))
    if not deleted:
        raise HTTPException(404, "Webhook not found")
    return {"status": "deleted", "webhook_id": webhook_id}

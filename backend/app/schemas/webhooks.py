"""Pydantic schemas for BTCPay webhook deliveries"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BTCPayWebhookPayload(BaseModel):
    """Common envelope of every BTCPay Greenfield webhook delivery"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    delivery_id: str = Field(alias="deliveryId", min_length=1)
    webhook_id: Optional[str] = Field(default=None, alias="webhookId")
    original_delivery_id: Optional[str] = Field(default=None, alias="originalDeliveryId")
    is_redelivery: bool = Field(default=False, alias="isRedelivery")
    type: str = Field(min_length=1)
    timestamp: Optional[int] = None
    store_id: Optional[str] = Field(default=None, alias="storeId")
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    metadata: Optional[Dict[str, Any]] = None
    after_expiration: Optional[bool] = Field(default=None, alias="afterExpiration")
    over_paid: Optional[bool] = Field(default=None, alias="overPaid")
    partially_paid: Optional[bool] = Field(default=None, alias="partiallyPaid")
    manually_marked: Optional[bool] = Field(default=None, alias="manuallyMarked")
    payment: Optional[Dict[str, Any]] = None
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")


class WebhookReceipt(BaseModel):
    status: str
    delivery_id: Optional[str] = None
    event_type: Optional[str] = None
    invoice_id: Optional[str] = None


class WebhookConfigRequest(BaseModel):
    webhook_id: str
    store_id: str
    url: str
    secret: str = Field(min_length=8)
    events: List[str] = []
    active: bool = True


class WebhookEnsureRequest(BaseModel):
    """Defaults to BTCPAY_WEBHOOK_URL when url is omitted"""
    url: Optional[str] = Field(default=None, min_length=1)


class RegisteredWebhook(BaseModel):
    id: Optional[str] = None
    url: Optional[str] = None
    events: List[str] = []
    active: bool


class WebhookStatusResponse(BaseModel):
    url: Optional[str] = None
    webhooks: List[RegisteredWebhook] = []
    required_events: List[str]
    missing_events: List[str]
    setup_complete: bool
    errors: List[str] = []

"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.payment_event import PaymentEvent
from app.models.invoice_aggregate import InvoiceAggregate
from app.models.reconciliation_outcome import ReconciliationOutcome
from app.models.dispatch_state import DispatchState
from app.models.webhook_config import WebhookConfig
from app.models.ledger_credential import LedgerCredential
from app.models.system_setting import SystemSetting

# Export all for convenience
__all__ = [
    "Base", "PaymentEvent", "InvoiceAggregate", "ReconciliationOutcome",
    "DispatchState", "WebhookConfig", "LedgerCredential", "SystemSetting"
]

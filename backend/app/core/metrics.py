"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name, documentation, labelnames=()):
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        # Already registered (module reloaded in tests)
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labelnames=()):
    try:
        return Gauge(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook receiver metrics
webhook_deliveries_counter = _counter(
    'reconciler_webhook_deliveries_total',
    'Webhook deliveries by receiver result',
    ['result']
)

# Orchestrator metrics
ledger_dispatch_counter = _counter(
    'reconciler_ledger_dispatch_total',
    'Ledger dispatch attempts by outcome',
    ['outcome', 'mode']
)

ledger_retry_counter = _counter(
    'reconciler_ledger_retries_total',
    'Transient ledger failures scheduled for retry'
)

invoices_status_counter = _counter(
    'reconciler_invoice_status_total',
    'Aggregate recomputations by resulting reconciliation status',
    ['status']
)

ledger_halted_gauge = _gauge(
    'reconciler_ledger_halted',
    '1 while dispatch is halted waiting for ledger reconnection'
)

unprocessed_events_gauge = _gauge(
    'reconciler_unprocessed_events',
    'Payment events waiting for the worker'
)

# Fallback sweep metrics
sweep_runs_counter = _counter(
    'reconciler_sweep_runs_total',
    'Total number of fallback sweep runs',
    ['status']
)

sweep_invoices_counter = _counter(
    'reconciler_sweep_invoices_total',
    'Invoices fed through reconciliation by the fallback sweep'
)

"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'settlement_webhook_events_total',
        'Total number of Stripe webhook deliveries by outcome',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('settlement_webhook_events_total')

# Email metrics
try:
    emails_counter = Counter(
        'settlement_emails_total',
        'Total number of transactional email attempts',
        ['type', 'status']
    )
except ValueError:
    emails_counter = REGISTRY._names_to_collectors.get('settlement_emails_total')

# Special Cheer metrics
try:
    special_cheer_amount_counter = Counter(
        'settlement_special_cheer_amount_total',
        'Cumulative Special Cheer amount settled (JPY)'
    )
except ValueError:
    special_cheer_amount_counter = REGISTRY._names_to_collectors.get('settlement_special_cheer_amount_total')

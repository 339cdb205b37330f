"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'billing_webhook_events_total',
        'Total number of verified Stripe webhook events by outcome',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('billing_webhook_events_total')

try:
    webhook_signature_failures_counter = Counter(
        'billing_webhook_signature_failures_total',
        'Total number of Stripe webhook requests rejected during verification'
    )
except ValueError:
    webhook_signature_failures_counter = REGISTRY._names_to_collectors.get('billing_webhook_signature_failures_total')

# Lock metrics
try:
    subscription_lock_timeouts_counter = Counter(
        'billing_subscription_lock_timeouts_total',
        'Total number of times a subscription lock could not be acquired'
    )
except ValueError:
    subscription_lock_timeouts_counter = REGISTRY._names_to_collectors.get('billing_subscription_lock_timeouts_total')

# Subscription action metrics
try:
    subscription_actions_counter = Counter(
        'billing_subscription_actions_total',
        'Total number of user and admin subscription actions',
        ['action', 'status']
    )
except ValueError:
    subscription_actions_counter = REGISTRY._names_to_collectors.get('billing_subscription_actions_total')

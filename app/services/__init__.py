"""Services for the delivery engine.

Services:
- queue.py: Durable job store operations (enqueue, claim, retry, clean)
- backoff.py: Exponential backoff and retry decisions
- resolver.py: Webhook fan-out and notification channel resolution
- dispatch.py: Event dispatch and retry control
- tracker.py: Delivery attempt history and metrics
- signing.py: HMAC-SHA256 signing and verification
- webhooks.py / notifications.py: Registration, template and inbox admin
"""

"""
channels — Push transport backends.

Each backend implements NotificationSender:
    send(addresses, title, body) → list of DeliveryResult

Per-address failures come back as results; transport-level failures are
raised as BatchTransportFailure. Retry logic lives in fanout_dispatcher.
"""

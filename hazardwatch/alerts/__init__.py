"""
alerts — Server-side fan-out of hazard events to push subscribers.

Sub-modules:
    channels/          — push transport backends
    directory          — subscriber directory (last location + push token)
    fanout_dispatcher  — geofence, batching, retry, failed-dispatch reporting
    models             — data structures shared across the system
"""

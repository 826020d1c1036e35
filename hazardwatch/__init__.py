"""
hazardwatch — Real-time road hazard alerting.

Watches an append-only feed of hazard reports (potholes, speed bumps) and
alerts nearby users:
    matching/  — per-watcher live geofenced matching (client side)
    alerts/    — server-side fan-out to push subscribers
"""

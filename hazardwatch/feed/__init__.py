"""
feed — The shared append-only hazard report feed.

Sub-modules:
    models       — HazardEvent, NewHazard, AppendNotification
    hazard_feed  — HazardFeed contract + in-memory store with change streams
    reporting    — capture → classify → append
"""

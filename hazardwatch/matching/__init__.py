"""
matching — Per-watcher live geofenced matching.

Sub-modules:
    models        — Watcher, Alert, SessionState
    live_matcher  — LiveMatcher session state machine + WatchSessionRegistry
"""

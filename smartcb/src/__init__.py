"""
SmartCB telemetry engine package.

Ingests live readings from a smart circuit breaker, keeps a bounded recent
window plus hourly rollups persisted in a local SQLite blob store, detects
threshold and outage events, and drives automatic relay reconnection after
power is restored.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-001)

TODO:
- None
"""

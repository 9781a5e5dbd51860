"""
Substation power monitor package.

Keeps long-lived WebSocket sessions (and a few HTTP/JSON data endpoints) open
to each configured substation, maps raw sensor object IDs onto named power
meter fields, and persists changed readings as time-series rows.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

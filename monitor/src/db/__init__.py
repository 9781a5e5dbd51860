"""
Relational store for stations, monitored-object maps, and power readings.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

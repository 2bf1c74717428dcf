"""
alerts — Emergency broadcasts and per-user alert delivery.

Sub-modules:
    fanout  — Broadcast creation, radius targeting, concurrent delivery, read state
    models  — Data structures shared across the system
"""

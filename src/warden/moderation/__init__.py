"""Moderation enforcement engine.

Self-contained modules:
- rate detector (sliding-window message/link abuse detection)
- scheduler (chained long delays + cancellation)
- lifecycle (timed punitive actions, restart recovery, idempotent expiry)
- reasons / durations (audit text and human duration parsing)
"""

"""
Sync subsystem.

Components:
- engine.py: pull/push with last-write-wins, conflicts, offline queue replay
- sync_store.py: SQLite cursors, pending operations, dead letters
- retry.py: exponential backoff + per-call timeout
- webdav.py: httpx-based WebDAV Transport
- runner.py: periodic sync on a background thread
"""

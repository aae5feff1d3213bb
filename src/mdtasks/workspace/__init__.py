"""
Workspace subsystem.

Components:
- registry.py: named workspaces, the current one, path retarget/migration
"""

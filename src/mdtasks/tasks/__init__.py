"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskList, ListMetadata, ...)
- task_codec.py: task file format (frontmatter + notes) and atomic writes
- list_store.py: per-list and workspace ordering files, load-time reconciliation
- repository.py: task/list operations for one workspace
"""

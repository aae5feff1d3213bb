"""
mdtasks: local-first task manager over plain-text markdown files.

Subpackages:
- tasks: task file codec, list ordering metadata, repository
- workspace: workspace registry
- sync: WebDAV last-write-wins sync engine, offline queue, background runner
- core: ports (Protocols), explicit workspace context, credential store
- cli: composition root
"""

__version__ = "0.1.0"

"""
Todo Sync package.

A personal task list served by FastAPI. Authentication, storage and the live
change feed come from a managed backend; this package keeps a per-browser
client context with optimistic local state reconciled against that backend.
"""

__version__ = "0.1.0"

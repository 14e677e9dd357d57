"""
merge-coordinator

Purpose
- Package root. A merge queue that serializes rebase, verify and merge of
  agent-produced branches into a project's trunk, one entry at a time.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules (CLI, git adapters) are imported by their users, not here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

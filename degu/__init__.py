"""
degu - A container-resident supervisor for a single application.

Fetches the application codebase from git, svn or an archive, runs the setup
steps, supervises the main process and exposes a small web management API to
restart, stop or re-sync it. Optionally polls the remote and applies updates.
"""

__version__ = "0.1.0"

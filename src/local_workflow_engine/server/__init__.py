"""FastAPI server adapter for the local workflow engine.

Design intent:
- Keep business logic in `local_workflow_engine.engine.*`
- Keep server-specific concerns (routing, CORS, status mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from local_workflow_engine.server.app import create_app

"""Local Workflow Engine.

A local-first automation engine: workflows react to email, chat, geofence and
time triggers and run a pipeline of actions (AI processing, messaging,
conditions, delays and approvals) with persisted, restart-safe state.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

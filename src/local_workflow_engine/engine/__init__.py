"""Workflow engine: triggers, action pipeline, stores and the service facade."""

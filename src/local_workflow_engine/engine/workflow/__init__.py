"""Workflow definitions and the action pipeline that executes them."""

"""Adapters for external email, chat and geofencing services."""

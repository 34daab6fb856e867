"""Trigger evaluation, run dispatch and geofence registration."""

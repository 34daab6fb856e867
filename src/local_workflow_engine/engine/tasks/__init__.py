"""Persisted background inference queue and its single-threaded consumer."""

"""Persistent record types and file protocol helpers."""

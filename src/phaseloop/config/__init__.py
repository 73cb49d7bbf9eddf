"""Configuration loading for phaseloop."""

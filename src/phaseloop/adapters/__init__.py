"""Agent subprocess adapters."""

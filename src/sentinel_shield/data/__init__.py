"""Event sources and their adapters."""

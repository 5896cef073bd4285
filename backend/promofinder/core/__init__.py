"""Core engine infrastructure: exceptions and logging setup."""

"""Core infrastructure: logging, errors, resilience, error reporting."""

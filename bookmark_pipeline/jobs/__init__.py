"""Job queue broker, stage handlers and worker runtime."""

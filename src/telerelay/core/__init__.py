"""Core infrastructure: configuration, logging, diagnostics and the durable store."""

"""Core infrastructure: logging, errors and the shared HTTP client."""

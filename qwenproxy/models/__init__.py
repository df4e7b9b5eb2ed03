"""Pydantic models for inbound requests and upstream payloads."""

"""Ports, explicit workspace context and credential storage."""

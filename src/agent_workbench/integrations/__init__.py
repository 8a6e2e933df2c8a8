"""Integrations with external hosting services."""

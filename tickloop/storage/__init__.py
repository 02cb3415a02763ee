"""Persistence and event publishing."""

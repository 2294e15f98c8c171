"""Workspace context assembly."""

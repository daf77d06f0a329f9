"""Unified search across the configured backends, in priority order."""

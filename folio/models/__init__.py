"""Shared data models: element identity, index entries, search results."""

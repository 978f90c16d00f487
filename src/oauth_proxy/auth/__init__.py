"""Credential loading, caching and refresh."""

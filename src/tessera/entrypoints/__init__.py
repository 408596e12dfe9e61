"""Entrypoints - HTTP API and background jobs."""

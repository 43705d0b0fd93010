"""Shared helpers: formatting, paths, resilience and structured logging."""

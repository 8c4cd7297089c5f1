"""Logging helpers for resque-pool."""

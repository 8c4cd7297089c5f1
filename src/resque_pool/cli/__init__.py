"""Command line interface for resque-pool."""

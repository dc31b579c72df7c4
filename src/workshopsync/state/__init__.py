"""State/cache layer.

This package is the single place where fetched rows, change-feed events
and confirmed mutation results are merged into the in-memory entity
collections the rest of the application reads.
"""

"""Ingestion layer.

This package turns change-feed payloads and fetched rows into validated
change events and folds them into the entity cache.
"""

__all__: list[str] = []

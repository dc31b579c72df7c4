"""Remote data service boundary (rows, auth, change feed, blob storage)."""

from workshopsync._api.base import (
    AuthEvent,
    AuthGateway,
    BlobStorage,
    ChangeFeed,
    DataService,
    RowGateway,
    StreamStatus,
    Subscription,
)
from workshopsync._api.memory import InMemoryDataService
from workshopsync._api.query import Filter, Query, eq, gte, ilike, in_, lte, neq
from workshopsync._api.remote import create_remote_service

__all__ = [
    "AuthEvent",
    "AuthGateway",
    "BlobStorage",
    "ChangeFeed",
    "DataService",
    "Filter",
    "InMemoryDataService",
    "Query",
    "RowGateway",
    "StreamStatus",
    "Subscription",
    "create_remote_service",
    "eq",
    "gte",
    "ilike",
    "in_",
    "lte",
    "neq",
]

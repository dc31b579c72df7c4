"""workshopsync - Async sync and consistency engine for a workshop-management backend."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("workshopsync")
except PackageNotFoundError:
    __version__ = "0+local"
from workshopsync._api import InMemoryDataService
from workshopsync.analytics import build_forecast, linear_regression, summarize_financials
from workshopsync.client import WorkshopClient
from workshopsync.config import WorkshopConfig
from workshopsync.exceptions import (
    WorkshopApiError,
    WorkshopAuthenticationError,
    WorkshopConfigError,
    WorkshopError,
    WorkshopMutationError,
    WorkshopRowNotFoundError,
    WorkshopSessionExpiredError,
    WorkshopSessionInitError,
    WorkshopTransportError,
)
from workshopsync.lifecycle import AppPhase, ConnectionStatus
from workshopsync.local_store import JsonFileStateStore, MemoryStateStore, PersistedState
from workshopsync.models import (
    AppNotification,
    Broker,
    Car,
    CarMake,
    CarModel,
    Client,
    Employee,
    Expense,
    FinancialSnapshot,
    Forecast,
    InspectionRequest,
    InternalMessage,
    PaymentType,
    RequestStatus,
    Reservation,
    Revenue,
    Trend,
)
from workshopsync.search import CarHistory
from workshopsync.state.events import ChangeEvent, ChangeKind, ChangeSource, EntityType

__all__ = [
    "__version__",
    "AppNotification",
    "AppPhase",
    "Broker",
    "Car",
    "CarHistory",
    "CarMake",
    "CarModel",
    "ChangeEvent",
    "ChangeKind",
    "ChangeSource",
    "Client",
    "ConnectionStatus",
    "Employee",
    "EntityType",
    "Expense",
    "FinancialSnapshot",
    "Forecast",
    "InMemoryDataService",
    "InspectionRequest",
    "InternalMessage",
    "JsonFileStateStore",
    "MemoryStateStore",
    "PaymentType",
    "PersistedState",
    "RequestStatus",
    "Reservation",
    "Revenue",
    "Trend",
    "WorkshopApiError",
    "WorkshopAuthenticationError",
    "WorkshopClient",
    "WorkshopConfig",
    "WorkshopConfigError",
    "WorkshopError",
    "WorkshopMutationError",
    "WorkshopRowNotFoundError",
    "WorkshopSessionExpiredError",
    "WorkshopSessionInitError",
    "WorkshopTransportError",
    "build_forecast",
    "linear_regression",
    "summarize_financials",
]

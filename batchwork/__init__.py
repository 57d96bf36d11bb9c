from .api import create_app
from .async_request import AlreadyProcessingError, AsyncRequest, DispatchError, DispatchResult, TransportError
from .config import Settings, load_settings
from .hooks import HookRegistry
from .models import Batch, HandleOutcome, ProcessConfig, ProcessStatus
from .process import BackgroundProcess
from .registry import DuplicateRegistrationError, ProcessRegistry, RegistryError, UnknownRegistrationError
from .security import TokenError, TokenProvider

__all__ = [
    "create_app",
    "AlreadyProcessingError",
    "AsyncRequest",
    "BackgroundProcess",
    "Batch",
    "DispatchError",
    "DispatchResult",
    "DuplicateRegistrationError",
    "HandleOutcome",
    "HookRegistry",
    "ProcessConfig",
    "ProcessRegistry",
    "ProcessStatus",
    "RegistryError",
    "Settings",
    "TokenError",
    "TokenProvider",
    "TransportError",
    "UnknownRegistrationError",
    "load_settings",
]

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, List, MutableMapping, Optional, Type, TypeVar

from .config import Settings, load_settings
from .models import ProcessConfig
from .process import BackgroundProcess
from .scheduler import RecurringScheduler, ThreadingScheduler
from .security import TokenProvider
from .storage import KeyValueStore, get_store
from .transport import HttpTriggerTransport, TriggerTransport

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BackgroundProcess)


class RegistryError(RuntimeError):
    """Base exception raised for registry-related issues."""


class DuplicateRegistrationError(RegistryError):
    """Raised when a process identifier is registered twice."""


class UnknownRegistrationError(RegistryError):
    """Raised when requesting a process that does not exist."""


@dataclass
class ProcessRegistry:
    """Holds the registered background processes and their shared collaborators.

    Every process built through :meth:`create` shares one store, token
    provider, transport and scheduler, so the worker host can route a
    trigger to the right process by its identifier.
    """

    settings: Settings
    store: KeyValueStore
    tokens: TokenProvider
    transport: TriggerTransport
    scheduler: RecurringScheduler
    processes: MutableMapping[str, BackgroundProcess] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        transport: Optional[TriggerTransport] = None,
        scheduler: Optional[RecurringScheduler] = None,
    ) -> "ProcessRegistry":
        """Build a registry, filling missing collaborators from settings.

        Args:
            settings: Service settings; loaded from the environment when omitted.
            store: Key-value store; selected by ``settings.store_backend`` when omitted.
            transport: Trigger transport; requests-based when omitted.
            scheduler: Recurring scheduler; threaded when omitted.

        Returns:
            ProcessRegistry: Registry with no processes yet.
        """
        settings = settings or load_settings()
        store = store or get_store(settings.store_backend)
        return cls(
            settings=settings,
            store=store,
            tokens=TokenProvider(settings.secret_key, store, max_age=settings.token_max_age),
            transport=transport or HttpTriggerTransport(),
            scheduler=scheduler or ThreadingScheduler(),
        )

    def create(self, process_cls: Type[P], config: Optional[ProcessConfig] = None, **kwargs: Any) -> P:
        """Instantiate ``process_cls`` with the shared collaborators and register it.

        Args:
            process_cls: Concrete :class:`BackgroundProcess` subclass.
            config: Per-process configuration.
            **kwargs: Extra constructor arguments for the subclass.

        Returns:
            The registered process.
        """
        process = process_cls(
            config,
            store=self.store,
            tokens=self.tokens,
            transport=self.transport,
            scheduler=self.scheduler,
            settings=self.settings,
            **kwargs,
        )
        self.register(process)
        return process

    def register(self, process: BackgroundProcess) -> None:
        if process.identifier in self.processes:
            raise DuplicateRegistrationError(f"Process '{process.identifier}' is already registered.")
        self.processes[process.identifier] = process
        logger.info("Registered background process %s", process.identifier)

    def get(self, identifier: str) -> BackgroundProcess:
        try:
            return self.processes[identifier]
        except KeyError as exc:
            raise UnknownRegistrationError(f"Unknown process '{identifier}'.") from exc

    def unregister(self, identifier: str) -> BackgroundProcess:
        """Remove a process and retire its health check.

        Queued batches stay in the store; a later registration resumes them.
        """
        process = self.get(identifier)
        process.clear_scheduled_event()
        del self.processes[identifier]
        logger.info("Unregistered background process %s", identifier)
        return process

    def snapshot(self) -> List[str]:
        return sorted(self.processes)

    def rearm(self) -> int:
        """Schedule the health check of every process that still has queued work.

        Returns:
            int: Number of processes re-armed.
        """
        count = 0
        for process in self.processes.values():
            if process.is_queued():
                process.schedule_event()
                count += 1
        return count

    def shutdown(self) -> None:
        self.scheduler.shutdown()

from __future__ import annotations

from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from batchwork.config import Settings
from batchwork.models import ProcessConfig
from batchwork.process import BackgroundProcess
from batchwork.registry import ProcessRegistry
from batchwork.security import TokenProvider
from batchwork.storage import MemoryKeyValueStore
from batchwork.transport import TriggerRequest, TriggerResult

TEST_SECRET = "test-secret-key"
TEST_BASE_URL = "http://worker.test"


class RecordingTransport:
    """Transport double that records triggers instead of sending them."""

    def __init__(self, ok: bool = True, error: Optional[str] = None) -> None:
        self.ok = ok
        self.error = error
        self.requests: List[TriggerRequest] = []

    def trigger(self, request: TriggerRequest) -> TriggerResult:
        self.requests.append(request)
        if self.ok:
            return TriggerResult(ok=True)
        return TriggerResult(ok=False, error=self.error or "connection refused")

    @property
    def last(self) -> TriggerRequest:
        return self.requests[-1]


class ManualScheduler:
    """Scheduler double fired explicitly by tests."""

    def __init__(self) -> None:
        self.schedules: Dict[str, Tuple[float, Callable[[], None]]] = {}
        self.shut_down = False

    def register(self, name: str, interval_seconds: float, callback: Callable[[], None]) -> None:
        self.schedules[name] = (interval_seconds, callback)

    def deregister(self, name: str) -> None:
        self.schedules.pop(name, None)

    def next_fire_time(self, name: str) -> Optional[float]:
        schedule = self.schedules.get(name)
        return 1000.0 + schedule[0] if schedule else None

    def fire(self, name: str) -> None:
        _, callback = self.schedules[name]
        callback()

    def shutdown(self) -> None:
        self.shut_down = True
        self.schedules.clear()


class ListProcess(BackgroundProcess):
    """Process recording each item; ``handler`` decides the task result."""

    def __init__(self, *args: Any, handler: Optional[Callable[[Any], Any]] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.handler = handler or (lambda item: None)
        self.seen: List[Any] = []

    def task(self, item: Any) -> Any:
        self.seen.append(item)
        return self.handler(item)


@pytest.fixture
def settings() -> Settings:
    return Settings(base_url=TEST_BASE_URL, secret_key=TEST_SECRET, store_backend="memory")


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def registry(settings, store, transport, scheduler) -> ProcessRegistry:
    return ProcessRegistry(
        settings=settings,
        store=store,
        tokens=TokenProvider(settings.secret_key, store, max_age=settings.token_max_age),
        transport=transport,
        scheduler=scheduler,
    )


@pytest.fixture
def make_process(registry) -> Callable[..., ListProcess]:
    """Build and register a ``ListProcess``; config fields come from kwargs."""

    def _make(handler: Optional[Callable[[Any], Any]] = None, **config: Any) -> ListProcess:
        config.setdefault("action", "import_rows")
        return registry.create(ListProcess, ProcessConfig(**config), handler=handler)

    return _make


def run_worker(process: BackgroundProcess, transport: RecordingTransport):
    """Handle the most recent trigger the way the worker endpoint would."""
    return process.maybe_handle(transport.last.params.get("nonce"))

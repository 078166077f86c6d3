"""
Environment signal notifiers.

Each notifier is a small broadcaster over a fixed event enum. Platform
integrations (OS callbacks, browser events, cgroup watchers...) subclass a
notifier, override ``on_start``/``on_stop`` to hook their source, and call
``notify`` when the environment changes. The source is started when the first
observer registers and stopped when the last one leaves.
"""

from enum import Enum
from typing import Callable, ClassVar, Generic, List, Type, TypeVar, Union

from shared.logging import get_logger


class ConnectivityEvent(str, Enum):
    AVAILABLE = "available"
    LOST = "lost"


class VisibilityEvent(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class MemoryPressureLevel(str, Enum):
    LOW = "low"
    HIGH = "high"


E = TypeVar("E", bound=Enum)
Observer = Callable[[E], None]


class SignalNotifier(Generic[E]):
    """Broadcaster with an ``add_observer``/``remove_observer`` contract."""

    event_type: ClassVar[Type[Enum]]
    signal_name: ClassVar[str] = "signal"

    def __init__(self):
        self._observers: List[Observer] = []
        self._started = False
        self.logger = get_logger(f"swr_cache.signals.{self.signal_name}")

    @property
    def has_observers(self) -> bool:
        return bool(self._observers)

    @property
    def is_started(self) -> bool:
        return self._started

    def add_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            return
        self._observers.append(observer)
        if not self._started:
            self._started = True
            self.on_start()
            self.logger.debug("Signal source started")

    def remove_observer(self, observer: Observer) -> None:
        if observer not in self._observers:
            return
        self._observers.remove(observer)
        if not self._observers and self._started:
            self._started = False
            self.on_stop()
            self.logger.debug("Signal source stopped")

    def notify(self, event: Union[E, str]) -> None:
        """Deliver ``event`` to every observer registered at call time."""
        event = self.event_type(event)
        self.logger.debug("Signal received", signal_event=event.value, observers=len(self._observers))
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as exc:
                self.logger.error(
                    "Signal observer failed",
                    signal_event=event.value,
                    error=str(exc),
                    exc_info=True
                )

    def on_start(self) -> None:
        """Hook for subclasses that attach to a platform source."""

    def on_stop(self) -> None:
        """Hook for subclasses that detach from a platform source."""


class NetworkConnectivity(SignalNotifier[ConnectivityEvent]):
    event_type = ConnectivityEvent
    signal_name = "connectivity"


class WindowVisibility(SignalNotifier[VisibilityEvent]):
    event_type = VisibilityEvent
    signal_name = "visibility"


class MemoryPressure(SignalNotifier[MemoryPressureLevel]):
    event_type = MemoryPressureLevel
    signal_name = "memory_pressure"

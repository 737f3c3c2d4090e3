import time
from typing import Callable, Optional


class AutosaveScheduler:
    """
    Debounced save trigger without threads.

    ``schedule()`` pushes the due time to ``delay`` seconds after the latest
    change; the owner calls ``tick()`` to run a save that has come due, or
    ``flush()`` to run a pending save immediately. The save callback reads
    whatever state is current when it runs.
    """

    def __init__(self, save: Callable[[], object], delay: float, clock: Optional[Callable[[], float]] = None):
        self._save = save
        self.delay = delay
        self._clock = clock or time.monotonic
        self._due_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._due_at is not None

    @property
    def due_at(self) -> Optional[float]:
        return self._due_at

    def schedule(self) -> None:
        self._due_at = self._clock() + self.delay

    def cancel(self) -> None:
        self._due_at = None

    def tick(self) -> bool:
        """Run the save if it is due. Returns True when a save ran."""
        if self._due_at is None or self._clock() < self._due_at:
            return False
        return self.flush()

    def flush(self) -> bool:
        if self._due_at is None:
            return False
        self._due_at = None
        self._save()
        return True

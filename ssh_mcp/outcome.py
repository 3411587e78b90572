import threading
import time
from typing import Any, Optional


class Outcome:
    """A result shared by every waiter of one in-flight operation.

    resolve() wins exactly once; later calls (a late result after a timeout,
    a timeout after a result) return False and change nothing.
    """

    def __init__(self, timeout: Optional[float] = None, context: Any = None):
        self.lock = threading.Lock()
        self.done_event = threading.Event()
        self.started_at = time.time()
        self.deadline = (self.started_at + timeout) if timeout is not None else None
        self.context = context
        self.value: Any = None
        self.error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self.done_event.is_set()

    def resolve(self, value: Any = None, error: Optional[BaseException] = None) -> bool:
        with self.lock:
            if self.done_event.is_set():
                return False
            self.value = value
            self.error = error
            self.done_event.set()
            return True

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    def wait(self, timeout: Optional[float] = None) -> bool:
        if timeout is None:
            timeout = self.remaining()
        return self.done_event.wait(timeout)

    def result(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

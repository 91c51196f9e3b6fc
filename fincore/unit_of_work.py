"""
Unit of Work

Wraps StorageInterface.atomic() so that a group of reads and writes across
savings, credit, loans, repayments and transactions either all commit or all
roll back. Units nest: an inner unit becomes a savepoint of the outer one and
only the outermost commit makes changes durable.

Callbacks registered with ``after_commit`` run once the outermost unit has
committed; they are dropped on rollback. Errors raised by a callback are
logged and never propagate, so a failed notification cannot undo money
movement.
"""

import threading
from contextlib import contextmanager
from typing import Callable, List, TypeVar

from .storage import StorageInterface
from .logging_config import get_logger


T = TypeVar("T")


class UnitOfWork:
    """Transactional context shared by the engine managers"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("fincore.unit_of_work")
        self._local = threading.local()

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @property
    def _callbacks(self) -> List[Callable[[], None]]:
        if not hasattr(self._local, "callbacks"):
            self._local.callbacks = []
        return self._local.callbacks

    @property
    def active(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self):
        """Open a unit (or join the surrounding one) and yield the storage"""
        self._local.depth = self._depth + 1
        outermost = self._local.depth == 1
        try:
            with self.storage.atomic() as ctx:
                yield ctx
        except BaseException:
            if outermost:
                self._callbacks.clear()
            raise
        finally:
            self._local.depth -= 1

        if outermost:
            self._run_callbacks()

    def run(self, operation: Callable[[StorageInterface], T]) -> T:
        """Execute ``operation(storage)`` inside one unit and return its result"""
        with self.atomic() as ctx:
            return operation(ctx)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after the outermost unit commits, or now when no unit is open"""
        if self.active:
            self._callbacks.append(callback)
        else:
            self._invoke(callback)

    def _run_callbacks(self) -> None:
        pending = list(self._callbacks)
        self._callbacks.clear()
        for callback in pending:
            self._invoke(callback)

    def _invoke(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            self.logger.error("Post-commit callback failed", exc_info=True)

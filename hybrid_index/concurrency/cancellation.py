import threading

from hybrid_index.core.errors import OperationCancelled


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a long-running
    operation (LSH grid search, elbow tuning). The operation polls it between
    units of work; cancelling never interrupts a unit mid-way.
    """
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{what} cancelled")

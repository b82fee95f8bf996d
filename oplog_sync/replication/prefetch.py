"""
Bounded read-ahead between the log reader and the apply stage.

A background thread drains the reader into a queue of fixed capacity; when
the destination is slow the queue fills and the reader blocks, so memory use
stays bounded. Items come out in exactly the order they went in.
"""

from typing import Iterator, Optional, TypeVar
import logging
import queue
import threading

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class ReadAhead(Iterator[T]):
    """
    Iterate ``source`` on a worker thread with at most ``capacity`` items
    buffered.

    Exceptions raised by ``source`` are re-raised in the consuming thread at
    the position they occurred. Call :meth:`close` (or use as a context
    manager) to stop the worker early.

    Example:
        >>> with ReadAhead(reader.catch_up(ts), capacity=500) as entries:
        ...     for entry in entries:
        ...         apply(entry)
    """

    def __init__(self, source: Iterator[T], capacity: int, poll_interval: float = 0.1):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._source = source
        self._queue: "queue.Queue" = queue.Queue(maxsize=capacity)
        self._poll_interval = poll_interval
        self._closed = threading.Event()
        self._finished = False
        self._thread = threading.Thread(target=self._produce, name="oplog-read-ahead", daemon=True)
        self._thread.start()

    def _put(self, item) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self) -> None:
        try:
            for item in self._source:
                if not self._put(item):
                    return
            self._put(_END)
        except Exception as e:
            self._put(_Failure(e))
        finally:
            close = getattr(self._source, "close", None)
            if close is not None:
                close()

    def __iter__(self) -> "ReadAhead[T]":
        return self

    def __next__(self) -> T:
        if self._finished:
            raise StopIteration
        while True:
            try:
                item = self._queue.get(timeout=self._poll_interval)
                break
            except queue.Empty:
                if not self._thread.is_alive() and self._queue.empty():
                    self._finished = True
                    raise RuntimeError("Read-ahead worker exited without finishing its source")
        if item is _END:
            self._finished = True
            raise StopIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self._closed.set()
        self._finished = True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Read-ahead worker did not stop within timeout")

    def __enter__(self) -> "ReadAhead[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

"""Lazy sequence of clamd response lines.

A background thread reads the socket line by line and hands every
parsed line over to the consumer through a single slot queue: the
reader waits for the consumer to take a result before reading the next
line, so results come out in the same order clamd sent them and
nothing piles up in memory.

Iteration stops when clamd closes the connection or the connection
breaks.  The two cases are told apart by the stream itself: after a
clean end ``drained`` is true, after a broken one ``error`` holds the
exception.

Closing the connection, e.g. on abort, ends the stream at once:
results already read but not taken yet are dropped.

"""
import logging
import queue
import threading
import typing as t

from .parser import parse_result
from .types import ClamdConnectionError, ClamdScanResult

logger = logging.getLogger(__name__)

# how often a blocked reader checks whether the consumer went away
_PUBLISH_POLL_INTERVAL = 0.1  # seconds

_END = object()


class ClamdResponseStream():
    """Results of a clamd command, delivered while they are read.

    Usage:
    .. code-block:: python

        stream = conn.read_responses()
        for result in stream:
            print(result.status, result.path)
        stream.raise_for_error()

    The stream is also the completion signal of the reader: ``wait()``
    blocks until everything clamd sent has been read, and callbacks
    registered with ``add_done_callback()`` run right after.
    """
    def __init__(self, conn, name: str = "clamd-reader"):
        self._conn = conn
        self._queue = queue.Queue(maxsize=1)
        self._done = threading.Event()
        self._abandoned = threading.Event()
        self._callbacks_lock = threading.Lock()
        self._callbacks = []
        self._exhausted = False
        self.drained = False
        self.error = None

        self._thread = threading.Thread(target=self._read_loop,
                                        name=name,
                                        daemon=True)
        self._thread.start()

    def __iter__(self) -> t.Iterator[ClamdScanResult]:
        return self

    def __next__(self) -> ClamdScanResult:
        if self._exhausted:
            raise StopIteration
        item = self._queue.get()
        if item is _END:
            self._exhausted = True
            raise StopIteration
        if self._conn.closed and not self.drained:
            # we hung up while it was waiting in the queue
            self._abandoned.set()
            self._exhausted = True
            raise StopIteration
        return item

    def __enter__(self):
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    @property
    def done(self) -> bool:
        """True once the reader stopped reading from clamd.
        """
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the reader to finish.

        :param timeout: Seconds to wait, None waits forever
        :return: True if the reader finished
        """
        return self._done.wait(timeout)

    def add_done_callback(self, fn: t.Callable[[], t.Any]) -> None:
        """Run fn once the reader finished (immediately if it already has).
        """
        with self._callbacks_lock:
            if not self._done.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def raise_for_error(self) -> None:
        """Raise ClamdConnectionError if the reader ended on an error.
        """
        if self.error is not None:
            raise ClamdConnectionError(
                f"Connection to clamd broken while reading: {self.error}"
            ) from self.error

    def close(self) -> None:
        """Stop consuming the stream.

        Results not read yet are discarded and the connection is closed,
        which releases the reader thread.
        """
        self._abandoned.set()
        self._exhausted = True
        self._conn.close()

    def _publish(self, item) -> bool:
        """Hand an item to the consumer, waiting until it takes it.

        :return: False if the consumer abandoned the stream, or if the
            connection was closed before a result could be handed over
        """
        while not self._abandoned.is_set():
            if item is not _END and self._conn.closed:
                return False
            try:
                self._queue.put(item, timeout=_PUBLISH_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _read_loop(self) -> None:
        reader = None
        try:
            reader = self._conn.makefile()
            for raw_line in reader:
                line = raw_line.decode(errors="replace").rstrip(" \t\r\n\x00")
                if not self._publish(parse_result(line)):
                    logger.debug("Response stream abandoned or closed")
                    break
            else:
                self.drained = not self._conn.closed
            if not self.drained:
                # we hung up on clamd, e.g. on abort: the response
                # may be truncated
                self.error = ClamdConnectionError(
                    "Connection closed before the end of response")
        except (OSError, ValueError) as e:
            # ValueError comes from reading a file object already closed
            logger.warning("clamd response reader stopped: %s", e)
            self.error = e
        finally:
            if reader is not None:
                try:
                    reader.close()
                except OSError:
                    pass
            if self._conn.closed and not self.drained:
                self._discard_pending()
            self._publish(_END)
            self._finish()

    def _discard_pending(self) -> None:
        """Drop the result read before the connection was closed.
        """
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass

    def _finish(self) -> None:
        with self._callbacks_lock:
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn()
            except Exception:
                logger.exception("Error in clamd response done callback")

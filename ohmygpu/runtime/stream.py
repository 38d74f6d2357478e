"""Bounded token channel between a generation thread and its consumer.

The producer blocks while the channel is full, so a slow consumer slows
generation down instead of buffering without limit. When the consumer
closes the stream (or simply drops it), the producer's next ``send``
returns False and generation stops after the current step.

The producer thread only references the channel, never the TokenStream
handle, so dropping the last handle closes the channel.
"""

import queue
import threading
from typing import Callable, Iterator, List, Optional, Tuple

from ohmygpu.logger import get_logger
from ohmygpu.types import ChatToken

logger = get_logger(__name__)

DEFAULT_CAPACITY = 100
_POLL_INTERVAL = 0.05

SendFn = Callable[[ChatToken], bool]
StopFn = Callable[[], bool]
Producer = Callable[[SendFn, StopFn], None]


class _Channel:
    """State shared by the producer thread and the consumer handle."""

    def __init__(self, capacity: int):
        self.queue: "queue.Queue" = queue.Queue(maxsize=capacity)
        self.closed = threading.Event()
        self.done = threading.Event()
        self.lock = threading.Lock()
        self.callbacks: List[Callable[[], None]] = []
        self.error: Optional[BaseException] = None

    def send(self, token: ChatToken) -> bool:
        """Block until queued; False once the consumer has closed."""
        while not self.closed.is_set():
            try:
                self.queue.put(token, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def close(self) -> None:
        self.closed.set()
        # Unblock a producer waiting on a full queue
        try:
            while True:
                self.queue.get_nowait()
        except queue.Empty:
            pass

    def mark_done(self) -> None:
        with self.lock:
            self.done.set()
            callbacks, self.callbacks = self.callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Stream done callback failed")


def _run_producer(channel: _Channel, producer: Producer) -> None:
    try:
        producer(channel.send, channel.closed.is_set)
    except BaseException as e:
        channel.error = e
        logger.error(f"Generation error: {e}")
    finally:
        channel.mark_done()


class TokenStream:
    """Iterable of ChatToken fed by a background producer thread.

    Iteration stops after the token carrying a ``finish_reason``. If the
    producer raised, the exception is re-raised from the iterator.

    Args:
        capacity: Maximum number of undelivered tokens
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._channel = _Channel(capacity)
        self._thread: Optional[threading.Thread] = None
        self._finished = False

    def start(self, producer: Producer, name: str = "ohmygpu-stream") -> "TokenStream":
        """Run ``producer(send, should_stop)`` on a daemon thread."""
        if self._thread is not None:
            raise RuntimeError("stream already started")
        self._thread = threading.Thread(
            target=_run_producer, args=(self._channel, producer), name=name, daemon=True
        )
        self._thread.start()
        return self

    def add_done_callback(self, callback: Callable[[], None]) -> None:
        """Call ``callback()`` once the producer has exited.

        Runs immediately on the calling thread if it already has.
        """
        channel = self._channel
        with channel.lock:
            if not channel.done.is_set():
                channel.callbacks.append(callback)
                return
        callback()

    def __iter__(self) -> Iterator[ChatToken]:
        return self

    def __next__(self) -> ChatToken:
        if self._finished:
            raise StopIteration
        channel = self._channel
        while True:
            try:
                item = channel.queue.get(timeout=_POLL_INTERVAL)
                break
            except queue.Empty:
                # Tokens are queued before done is set, so empty + done means drained
                if channel.done.is_set() and channel.queue.empty():
                    self._finished = True
                    if channel.error is not None:
                        raise channel.error
                    raise StopIteration
        if item.finish_reason is not None:
            self._finished = True
        return item

    def collect(self) -> Tuple[str, Optional[str]]:
        """Drain the stream into (text, finish_reason)."""
        pieces = []
        finish_reason = None
        for token in self:
            pieces.append(token.content)
            finish_reason = token.finish_reason or finish_reason
        return "".join(pieces), finish_reason

    def close(self) -> None:
        """Stop consuming; the producer halts at its next send."""
        self._finished = True
        self._channel.close()

    @property
    def closed(self) -> bool:
        return self._channel.closed.is_set()

    @property
    def done(self) -> bool:
        return self._channel.done.is_set()

    @property
    def error(self) -> Optional[BaseException]:
        return self._channel.error

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the producer to exit; True if it did."""
        return self._channel.done.wait(timeout)

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self):
        channel = getattr(self, "_channel", None)
        if channel is not None:
            channel.close()

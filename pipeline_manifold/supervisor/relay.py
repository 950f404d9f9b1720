import logging
import threading
from typing import Any, Callable, List, Optional, Tuple

from pipeline_manifold.config import effective_settings as config

log = logging.getLogger(__name__)


def _close_quietly(stream: Any) -> None:
    try:
        stream.close()
    except (OSError, ValueError) as e:
        log.debug(f"Ignoring error while closing {stream!r}: {e}")


class StreamFanout:
    """
    Copies the bytes of one source stream to any number of sink streams.

    The source is read by a daemon pump thread. Sinks are binary writable
    file objects (a child's stdin pipe, the program's stdout). A sink that
    fails on write is dropped; the others keep receiving data.
    """

    def __init__(self, name: str, chunk_size: Optional[int] = None) -> None:
        self.name = name
        self.chunk_size = chunk_size or config.RELAY_CHUNK_SIZE
        # _lock guards the sink list, _write_lock keeps deliveries in order.
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._sinks: List[Tuple[Any, bool]] = []
        self._buffer: List[bytes] = []
        self._paused = False
        self._ended = False
        self._pump: Optional[threading.Thread] = None

    @property
    def sinks(self) -> List[Any]:
        with self._lock:
            return [sink for sink, _ in self._sinks]

    @property
    def ended(self) -> bool:
        return self._ended

    def pipe(self, sink: Any, end: bool = True) -> None:
        """
        Connects a sink. With `end=True` the sink is closed when the fan-out ends.

        :param sink: A writable binary stream.
        :param end: Whether `end()` should close this sink.
        """
        with self._lock:
            if self._ended:
                log.debug(f"{self.name} already ended; not piping into {sink!r}.")
                if end:
                    _close_quietly(sink)
                return
            if any(existing is sink for existing, _ in self._sinks):
                return
            self._sinks.append((sink, end))

    def unpipe(self, sink: Any) -> None:
        with self._lock:
            self._sinks = [(s, end) for s, end in self._sinks if s is not sink]

    def write(self, data: bytes) -> None:
        """Delivers a chunk to every sink, or buffers it while paused."""
        with self._write_lock:
            with self._lock:
                if self._ended:
                    return
                if self._paused:
                    self._buffer.append(data)
                    return
                sinks = list(self._sinks)
            self._deliver(data, sinks)

    def _deliver(self, data: bytes, sinks: List[Tuple[Any, bool]]) -> None:
        for sink, _ in sinks:
            try:
                sink.write(data)
                sink.flush()
            except (OSError, ValueError) as e:
                # BrokenPipeError or a closed file: the consumer is gone.
                log.debug(f"Dropping sink {sink!r} from {self.name}: {e}")
                self.unpipe(sink)

    def end(self) -> None:
        """
        Flushes anything still buffered, then closes every sink piped with
        `end=True`. Later writes are discarded.
        """
        with self._write_lock:
            with self._lock:
                if self._ended:
                    return
                pending, self._buffer = self._buffer, []
                self._paused = False
                sinks = list(self._sinks)
            for chunk in pending:
                self._deliver(chunk, sinks)
            with self._lock:
                self._ended = True
                sinks, self._sinks = self._sinks, []

        log.debug(f"Ending {self.name}: closing {sum(1 for _, end in sinks if end)} sink(s).")
        for sink, end in sinks:
            if end:
                _close_quietly(sink)
            else:
                try:
                    sink.flush()
                except (OSError, ValueError) as e:
                    log.debug(f"Could not flush {sink!r}: {e}")

    def attach_source(
        self,
        stream: Any,
        on_eof: Optional[Callable[[], None]] = None,
        close_source: bool = True,
    ) -> threading.Thread:
        """
        Starts a daemon thread that copies `stream` into this fan-out until EOF.

        :param stream: A readable binary stream (e.g. a Popen stdout pipe).
        :param on_eof: Called from the pump thread once the stream is exhausted.
        :param close_source: Close `stream` when the pump finishes.
        :return threading.Thread: The started pump thread.
        """
        pump = threading.Thread(
            target=self._pump_source,
            args=(stream, on_eof, close_source),
            daemon=True,
            name=f"Pump[{self.name}]",
        )
        self._pump = pump
        pump.start()
        return pump

    def _pump_source(self, stream: Any, on_eof: Optional[Callable[[], None]], close_source: bool) -> None:
        read = getattr(stream, "read1", None) or stream.read
        try:
            while True:
                chunk = read(self.chunk_size)
                if not chunk:
                    break
                self.write(chunk)
        except (OSError, ValueError) as e:
            log.debug(f"Pump for {self.name} stopped: {e}")
        finally:
            log.debug(f"Source of {self.name} reached end of stream.")
            if close_source:
                _close_quietly(stream)
            if on_eof:
                on_eof()

    def wait_for_source(self, timeout: Optional[float] = None) -> bool:
        """
        Waits for the current pump thread to finish.

        :return bool: True if the source is exhausted (or none was attached).
        """
        pump = self._pump
        if pump is None:
            return True
        pump.join(timeout)
        return not pump.is_alive()


class BufferedRelay(StreamFanout):
    """
    The pausable relay between the master's output and the rest of the graph.

    It starts paused: bytes produced before the pipe topology is complete are
    buffered and handed, in order, to every consumer attached by the time
    `resume()` is called. After that it is a plain pass-through.
    """

    def __init__(self, name: str = "relay", chunk_size: Optional[int] = None) -> None:
        super().__init__(name, chunk_size)
        self._paused = True

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def buffered_bytes(self) -> int:
        with self._lock:
            return sum(len(chunk) for chunk in self._buffer)

    def pause(self) -> None:
        with self._lock:
            if not self._ended:
                self._paused = True

    def resume(self) -> None:
        """Flushes the buffered bytes to the current sinks and starts flowing."""
        with self._write_lock:
            with self._lock:
                if not self._paused:
                    return
                self._paused = False
                pending, self._buffer = self._buffer, []
                sinks = list(self._sinks)
            log.debug(f"Resuming {self.name}: flushing {sum(len(c) for c in pending)} buffered byte(s).")
            for chunk in pending:
                self._deliver(chunk, sinks)

"""
ChunkStream - abortable, multi-subscriber event source for streamed completions.

The producer side (a handler coroutine) publishes deltas, completion and
errors into a ChunkStream; callers only ever see the ChunkHandler view.

Listeners live in plain lists consulted by the production task, so a caller
that subscribes right after `execute()` returns (before its next await) sees
every event. Listeners registered after the stream settles never fire.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DataCallback = Callable[[str, str], None]
EndCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]
DoneCallback = Callable[[str, Optional[Exception]], None]
Producer = Callable[["ChunkStream"], Awaitable[None]]


class ChunkStream:
    """
    Event source shared by every handler.

    State transitions: open -> ended | failed | aborted. Abort is terminal
    and silent: it cancels the production task (closing the HTTP stream)
    and suppresses every later callback, including on_error.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger
        self._data_listeners: list[DataCallback] = []
        self._end_listeners: list[EndCallback] = []
        self._error_listeners: list[ErrorCallback] = []
        self._done_callbacks: list[DoneCallback] = []
        self._finalizers: list[Callable[[], None]] = []
        self._text = ""
        self._aborted = False
        self._settled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def is_aborted(self) -> bool:
        return self._aborted

    @property
    def is_settled(self) -> bool:
        """True once ended, failed or aborted."""
        return self._settled

    # ─────────────────────────────────────────────────────────────────
    # Subscription
    # ─────────────────────────────────────────────────────────────────

    def on_data(self, callback: DataCallback) -> None:
        if not self._settled:
            self._data_listeners.append(callback)

    def on_end(self, callback: EndCallback) -> None:
        if not self._settled:
            self._end_listeners.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        if not self._settled:
            self._error_listeners.append(callback)

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Run after end/error listeners once production settles (never after abort)."""
        if not self._settled:
            self._done_callbacks.append(callback)

    def add_finalizer(self, callback: Callable[[], None]) -> None:
        """Run when the production task exits, whatever the outcome (abort included)."""
        self._finalizers.append(callback)

    # ─────────────────────────────────────────────────────────────────
    # Producer side
    # ─────────────────────────────────────────────────────────────────

    def publish(self, chunk: str) -> None:
        if self._settled:
            return
        self._text += chunk
        for callback in list(self._data_listeners):
            if self._aborted:
                return
            callback(chunk, self._text)

    def finish(self) -> None:
        if self._settled:
            return
        self._settled = True
        try:
            for callback in list(self._end_listeners):
                if self._aborted:
                    return
                callback(self._text)
        finally:
            self._run_done_callbacks(None)

    def fail(self, error: Exception) -> None:
        if self._settled:
            return
        self._settled = True
        try:
            for callback in list(self._error_listeners):
                if self._aborted:
                    return
                callback(error)
        finally:
            self._run_done_callbacks(error)

    def _run_done_callbacks(self, error: Optional[Exception]) -> None:
        # Done callbacks run even when a listener raised, but never after abort
        if self._aborted:
            return
        for callback in list(self._done_callbacks):
            callback(self._text, error)

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def start(self, producer: Producer) -> "ChunkHandler":
        """
        Schedule the producer on the running loop and return the caller view.

        Must be called from inside a running event loop. The producer does
        not start until the caller yields control.
        """
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._drive(producer))
        return ChunkHandler(self)

    async def _drive(self, producer: Producer) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            self._log.debug("Request aborted, production task cancelled")
        except Exception as exc:
            if self._aborted:
                self._log.debug("Ignoring error after abort: %s", exc)
                return
            if self._settled:
                # A listener raised after the stream had already settled
                self._log.exception("Listener failed after stream settled")
                return
            self._log.debug("Stream failed: %s", exc)
            try:
                self.fail(exc)
            except Exception:
                self._log.exception("Error listener failed")
        finally:
            for callback in self._finalizers:
                callback()

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._settled = True
        self._log.debug("Request aborted")
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the production task to finish (ended, failed or aborted)."""
        if self._task is not None:
            await asyncio.wait([self._task])


class ChunkHandler:
    """
    Live-stream handle returned by `execute()`.

    Exposes listener registration and abort; the producer half of the
    ChunkStream stays private to the handler that created it.
    """

    def __init__(self, stream: ChunkStream):
        self._stream = stream

    def on_data(self, callback: DataCallback) -> None:
        """callback(chunk, accumulated_text) for every delta, in arrival order."""
        self._stream.on_data(callback)

    def on_end(self, callback: EndCallback) -> None:
        """callback(full_text) once the backend stream is exhausted."""
        self._stream.on_end(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._stream.on_error(callback)

    def add_done_callback(self, callback: DoneCallback) -> None:
        self._stream.add_done_callback(callback)

    def add_finalizer(self, callback: Callable[[], None]) -> None:
        self._stream.add_finalizer(callback)

    def abort(self) -> None:
        """Stop the transport immediately. Idempotent; never reported as an error."""
        self._stream.abort()

    @property
    def text(self) -> str:
        return self._stream.text

    @property
    def is_aborted(self) -> bool:
        return self._stream.is_aborted

    async def wait(self) -> None:
        await self._stream.wait()

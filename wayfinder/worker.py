"""Background route searches with latest-request-wins semantics.

Searches run on a small thread pool so request handlers never block on
graph traversal. Each submission belongs to a channel (for example one per
client session); a newer submission on the same channel supersedes the
older ones, whose results are discarded when they finish. A channel is
forgotten once its latest result has been collected, so one-off channels
do not accumulate.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


@dataclass(slots=True, frozen=True)
class RouteTicket:
    channel: str
    generation: int
    future: Future


class RouteWorker:
    def __init__(self, max_workers: int = 2) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wayfinder-route")
        self._lock = threading.Lock()
        # Generations come from one worker-wide counter and are never reused.
        self._counter = itertools.count(1)
        self._generations: dict[str, int] = {}
        self._closed = False

    def submit(self, channel: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> RouteTicket:
        """Queue `fn(*args, **kwargs)`; supersedes earlier work on `channel`."""
        with self._lock:
            if self._closed:
                raise RuntimeError("RouteWorker is shut down")
            generation = next(self._counter)
            self._generations[channel] = generation
            future = self._executor.submit(fn, *args, **kwargs)
        logger.debug("Submitted search %s#%d", channel, generation)
        return RouteTicket(channel=channel, generation=generation, future=future)

    def is_current(self, ticket: RouteTicket) -> bool:
        with self._lock:
            return self._generations.get(ticket.channel) == ticket.generation

    def pending_channels(self) -> int:
        """Channels whose latest submission has not been collected yet."""
        with self._lock:
            return len(self._generations)

    def _release(self, ticket: RouteTicket) -> bool:
        with self._lock:
            if self._generations.get(ticket.channel) != ticket.generation:
                return False
            del self._generations[ticket.channel]
            return True

    def result(self, ticket: RouteTicket, timeout: float | None = DEFAULT_TIMEOUT_S) -> Any | None:
        """Result of `ticket`, or None if it was superseded.

        Collecting the latest ticket of a channel releases the channel, so a
        ticket yields its value once; later calls return None.

        Raises:
            TimeoutError: If the search does not finish within `timeout`.
            Exception: Whatever the search itself raised.
        """
        try:
            value = ticket.future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise TimeoutError(f"Route search {ticket.channel}#{ticket.generation} timed out") from exc
        except Exception:
            self._release(ticket)
            raise
        if not self._release(ticket):
            logger.debug("Discarding superseded search %s#%d", ticket.channel, ticket.generation)
            return None
        return value

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

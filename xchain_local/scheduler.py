"""Periodic relay passes over all relayer backends.

The scheduler ticks every ``interval`` seconds. A tick that arrives
while a pass is still running is dropped, never queued: at most one pass
runs at any time and a slow backend only costs ticks.

- The busy flag is a non-blocking :py:class:`threading.Lock` held
  for the whole pass
- A failing ``relay()`` is recorded in the :py:class:`RelayPassResult`
  and the next tick runs as usual
- A failing ``after_relay`` hook is not caught by :py:meth:`RelayScheduler.tick`.
  In the background loop it halts the scheduler and is kept in
  :py:attr:`RelayScheduler.hook_error`

Example::

    scheduler = RelayScheduler(
        [EvmRelayer()],
        interval=2.0,
        after_relay=lambda relay_data: print(relay_data.executed),
        on_pass=lambda result: result.ok or logger.error("Relay failures %s", result.failures),
    )
    scheduler.start()
    ...
    scheduler.stop()
"""

import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from xchain_local.relay.base import RelayData, RelayerBackend

logger = logging.getLogger(__name__)

#: Called with each backend's relay data after a pass
AfterRelayHook = Callable[[RelayData], None]


@dataclass(slots=True)
class RelayFailure:
    """A backend ``relay()`` that raised during a pass."""

    relayer: RelayerBackend

    error: Exception


@dataclass(slots=True)
class RelayPassResult:
    """Outcome of one relay pass."""

    started_at: datetime.datetime

    finished_at: datetime.datetime | None = None

    failures: list[RelayFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def duration(self) -> datetime.timedelta | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class RelayScheduler:
    """Run relay passes on an interval, skipping ticks while busy."""

    def __init__(
        self,
        relayers: list[RelayerBackend],
        interval: float = 2.0,
        after_relay: AfterRelayHook | None = None,
        on_pass: Callable[[RelayPassResult], None] | None = None,
    ):
        assert interval > 0, f"Bad relay interval: {interval}"
        self.relayers = list(relayers)
        self.interval = interval
        self.after_relay = after_relay
        self.on_pass = on_pass

        self._busy = threading.Lock()
        self._stopped = threading.Event()
        self._ticker: threading.Thread | None = None
        self._counter_lock = threading.Lock()

        #: Completed passes
        self.passes = 0

        #: Ticks skipped because a pass was running
        self.dropped_ticks = 0

        #: Exception that halted the background loop
        self.hook_error: Exception | None = None

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._stopped.is_set()

    def _drop_tick(self):
        with self._counter_lock:
            self.dropped_ticks += 1
        logger.debug("Relay pass still running, tick dropped")

    def tick(self) -> RelayPassResult | None:
        """Run one pass now, unless one is already running.

        :return:
            Pass result, or ``None`` if the tick was dropped

        :raise Exception:
            Whatever ``after_relay`` or ``on_pass`` raise
        """
        if not self._busy.acquire(blocking=False):
            self._drop_tick()
            return None
        try:
            return self._run_pass()
        finally:
            self._busy.release()

    def _run_pass(self) -> RelayPassResult:
        result = RelayPassResult(started_at=datetime.datetime.now(datetime.timezone.utc))

        for relayer in self.relayers:
            try:
                relayer.relay()
            except Exception as e:
                logger.warning("Relayer %s failed: %s", relayer.name, e, exc_info=True)
                result.failures.append(RelayFailure(relayer=relayer, error=e))

        result.finished_at = datetime.datetime.now(datetime.timezone.utc)
        with self._counter_lock:
            self.passes += 1

        if self.after_relay is not None:
            for relayer in self.relayers:
                relay_data = relayer.relay_data
                if relay_data is not None:
                    self.after_relay(relay_data)

        if self.on_pass is not None:
            self.on_pass(result)

        return result

    def _run_in_background(self):
        # The ticker took the busy lock for us
        try:
            self._run_pass()
        except Exception as e:
            logger.error("Relay hook failed, relaying halted: %s", e, exc_info=True)
            self.hook_error = e
            self._stopped.set()
        finally:
            self._busy.release()

    def _dispatch(self):
        if not self._busy.acquire(blocking=False):
            self._drop_tick()
            return
        worker = threading.Thread(target=self._run_in_background, name="relay-pass", daemon=True)
        try:
            worker.start()
        except BaseException:
            self._busy.release()
            raise

    def _tick_loop(self):
        while not self._stopped.wait(self.interval):
            self._dispatch()

    def start(self):
        """Start ticking in a background thread."""
        assert self._ticker is None, "Scheduler already started"
        logger.info("Relaying every %.1f seconds with %d relayers", self.interval, len(self.relayers))
        self._ticker = threading.Thread(target=self._tick_loop, name="relay-ticker", daemon=True)
        self._ticker.start()

    def stop(self, wait_for_pass: bool = False, timeout: float | None = None):
        """Cancel future ticks.

        A pass that is already running is not interrupted.
        Calling stop twice, or before start, is safe.

        :param wait_for_pass:
            Block until a running pass has finished
        """
        self._stopped.set()
        ticker = self._ticker
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout)
        if wait_for_pass:
            if self._busy.acquire(timeout=-1 if timeout is None else timeout):
                self._busy.release()
        logger.info("Relay scheduler stopped after %d passes, %d dropped ticks", self.passes, self.dropped_ticks)

"""Heartbeat that drives housekeeping and delivery.

Each tick runs the housekeeping jobs in order (forwarded messages, session
extension, event batching, consent sync) and then starts at most one
delivery. The transport call runs on an executor so the tick never blocks;
its completion callback confirms or requeues the request under the same
lock the ticks and the public API use.

Stopping only prevents future ticks. A delivery already in flight still
completes and its callback still updates the queue.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from functools import partial
from typing import Callable, Iterable

from beacon.clock import Clock
from beacon.consent import ConsentGate
from beacon.request_queue import RequestQueue
from beacon.transport import DeliveryResult, HttpTransport

logger = logging.getLogger(__name__)


class DeliveryScheduler:
    def __init__(self, queue: RequestQueue, transport: HttpTransport,
                 consent: ConsentGate | None = None,
                 clock: Clock | None = None,
                 interval: float = 0.5,
                 executor: Executor | None = None,
                 lock: threading.RLock | None = None,
                 housekeeping: Iterable[Callable[[], None]] = (),
                 enabled: bool = True) -> None:
        self.queue = queue
        self.transport = transport
        self.consent = consent
        self.clock = clock or Clock()
        self.interval = interval
        self.enabled = enabled
        self.housekeeping = list(housekeeping)
        self._executor = executor
        self._lock = lock or threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop_event.is_set()

    def start(self) -> None:
        """Start ticking in a daemon thread. Repeated starts are no-ops."""
        if self.running:
            logger.debug("Heartbeat already running")
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,),
            name="beacon-heartbeat", daemon=True,
        )
        self._thread.start()
        logger.debug("Heartbeat started, interval %ss", self.interval)

    def stop(self, wait: bool = False) -> None:
        thread = self._thread
        self._stop_event.set()
        self._thread = None
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval * 2)
        logger.debug("Heartbeat stopped")

    def shutdown(self) -> None:
        self.stop(wait=True)
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # a broken tick must not kill the heartbeat
                logger.exception("Heartbeat tick failed")
            stop_event.wait(self.interval)

    def tick(self) -> None:
        with self._lock:
            for job in self.housekeeping:
                job()
            self._deliver()

    # ── Delivery ────────────────────────────────────────────────────

    def _executor_or_default(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="beacon-delivery")
        return self._executor

    def _next_request(self) -> dict | None:
        request = self.queue.peek_and_lock()
        if request is None:
            return None
        if self.consent is not None and self.consent.staged:
            request["consent"] = json.dumps(self.consent.take_staged(), separators=(",", ":"))
        return request

    def _deliver(self) -> None:
        if not self.enabled or not self.queue.ready(self.clock.now()):
            return
        request = self._next_request()
        if request is None:
            return
        self.attempts += 1
        logger.debug("Processing request %s", request)
        try:
            future = self._executor_or_default().submit(self.transport.send, dict(request))
        except RuntimeError as e:
            # executor already shut down
            logger.debug("Could not submit delivery: %s", e)
            self.queue.requeue(request, self.clock.now())
            return
        future.add_done_callback(partial(self._on_complete, request))

    def _on_complete(self, request: dict, future: Future) -> None:
        try:
            result = future.result()
        except Exception as e:
            result = DeliveryResult(ok=False, error=str(e))
        with self._lock:
            self._finish(request, result)

    def _finish(self, request: dict, result: DeliveryResult) -> None:
        if result.ok:
            logger.debug("Request delivered")
            self.queue.confirm(request)
        else:
            logger.debug("Request failed (%s), retrying in %ss",
                         result.error or result.status, self.queue.fail_timeout)
            self.queue.requeue(request, self.clock.now())

    def flush(self, max_requests: int | None = None) -> int:
        """Deliver queued requests synchronously until one fails.

        Ignores the fail-timeout and the interval but not ``enabled``.
        Returns how many were delivered.
        """
        if not self.enabled:
            logger.debug("Delivery disabled, not flushing")
            return 0
        delivered = 0
        with self._lock:
            for job in self.housekeeping:
                job()
            while max_requests is None or delivered < max_requests:
                request = self._next_request()
                if request is None:
                    break
                self.attempts += 1
                try:
                    result = self.transport.send(dict(request))
                except Exception as e:
                    result = DeliveryResult(ok=False, error=str(e))
                self._finish(request, result)
                if not result.ok:
                    break
                delivered += 1
        return delivered

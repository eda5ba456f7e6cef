"""
scheduler.py — Cancelable repeating tasks and connectivity events

RepeatingTask is the only place the storage core starts a thread. The
sync coordinator's health-check timer and the remote subscription
pollers both run on one, and both are stopped through cancel().

ConnectivityMonitor carries "network up / network down" signals from the
runtime (or a test) to whoever subscribed; it never checks anything itself.
"""

import logging
import threading

log = logging.getLogger("chabs.scheduler")


class RepeatingTask:
    """Call `fn` every `interval` seconds on a daemon thread until cancelled."""

    def __init__(self, interval: float, fn, name: str = "chabs-task",
                 run_immediately: bool = False):
        self.interval = interval
        self.name = name
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread = None
        self._runs = 0

    def start(self):
        if self._thread and self._thread.is_alive():
            log.warning("%s already running", self.name)
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        log.debug("%s started (interval=%.1fs)", self.name, self.interval)
        return self

    def cancel(self, timeout: float = 5.0):
        """Stop the loop. Safe to call more than once, and from inside fn."""
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self.cancelled)

    @property
    def runs(self) -> int:
        return self._runs

    def _loop(self):
        if not self._run_immediately:
            if self._stop_event.wait(self.interval):
                return
        while not self._stop_event.is_set():
            try:
                self._fn()
            except Exception as e:
                log.error("%s iteration failed: %s", self.name, e, exc_info=True)
            self._runs += 1
            # Wait for interval or stop signal
            if self._stop_event.wait(self.interval):
                break


class ConnectivityMonitor:
    """Fan-out of connectivity changes to registered listeners.

    Listeners are called synchronously, in registration order, on the
    thread that reported the change.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners = []
        self._lock = threading.Lock()

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener):
        """Register listener(online: bool). Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def set_online(self, online: bool):
        with self._lock:
            changed = online != self._online
            self._online = online
            listeners = list(self._listeners)
        if not changed:
            return
        log.info("Network: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                log.error("Connectivity listener failed: %s", e, exc_info=True)

    def network_up(self):
        self.set_online(True)

    def network_down(self):
        self.set_online(False)

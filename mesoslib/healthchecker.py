"""Periodic HTTP health checks of an agent process."""

from __future__ import annotations

import http.client
import logging
import queue
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Optional

from mesoslib.pid import UPID

__all__ = [
    "DEFAULT_TIMEOUT",
    "DEFAULT_CHECK_DURATION",
    "DEFAULT_THRESHOLD",
    "HealthChecker",
    "SlaveHealthChecker",
]

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1.0
DEFAULT_CHECK_DURATION = 1.0
DEFAULT_THRESHOLD = 5


class HealthChecker(ABC):
    """Watches a process and reports when it looks unhealthy."""

    @abstractmethod
    def start(self) -> "queue.Queue[float]":
        """Start checking; unhealthy events arrive on the returned queue as timestamps."""

    @abstractmethod
    def pause(self) -> None:
        """Suspend checking."""

    @abstractmethod
    def resume(self, slave_upid: UPID) -> None:
        """Resume checking, now against ``slave_upid``."""

    @abstractmethod
    def stop(self) -> None:
        """Stop checking for good."""


class SlaveHealthChecker(HealthChecker):
    """Sends HEAD requests to ``/<id>/health``; reports after ``threshold`` failures in a row.

    Zero (or negative) arguments select the defaults. Durations are in seconds.
    """

    def __init__(self, slave_upid: UPID, threshold: int = 0,
                 check_duration: float = 0.0, timeout: float = 0.0) -> None:
        self.slave_upid = slave_upid
        self.threshold = threshold if threshold > 0 else DEFAULT_THRESHOLD
        self.check_duration = check_duration if check_duration > 0 else DEFAULT_CHECK_DURATION
        self.timeout = timeout if timeout > 0 else DEFAULT_TIMEOUT
        self.continuous_unhealthy_count = 0
        self.paused = False
        self.notifications: "queue.Queue[float]" = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def start(self) -> "queue.Queue[float]":
        self._thread = threading.Thread(target=self._run, name="slave-health-checker", daemon=True)
        self._thread.start()
        return self.notifications

    def pause(self) -> None:
        with self._lock:
            self.paused = True

    def resume(self, slave_upid: UPID) -> None:
        with self._lock:
            self.paused = False
            self.slave_upid = slave_upid

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        while not self._stop.wait(self.check_duration):
            with self._lock:
                if not self.paused:
                    self._check()

    def _url(self) -> str:
        pid = self.slave_upid
        host = f"[{pid.host}]" if ":" in pid.host else pid.host
        return f"http://{host}:{pid.port}/{pid.id}/health"

    def _healthy(self) -> bool:
        request = urllib.request.Request(self._url(), method="HEAD")
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                status = response.status
        except urllib.error.HTTPError as exc:
            status = exc.code
            exc.close()
        except (OSError, http.client.HTTPException) as exc:
            log.error("Failed to request the health path: %s", exc)
            return False
        if status != 200:
            log.error("Failed to request the health path: status: %s", status)
            return False
        return True

    def _check(self) -> None:
        if self._healthy():
            self.continuous_unhealthy_count = 0
            return
        self.continuous_unhealthy_count += 1
        if self.continuous_unhealthy_count >= self.threshold:
            try:
                self.notifications.put_nowait(time.time())
            except queue.Full:
                pass  # nobody has taken the previous notification
            self.continuous_unhealthy_count = 0
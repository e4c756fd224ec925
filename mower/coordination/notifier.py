"""Detection notifications with per-class cooldown and bounded retries.

``notify`` is called from the control loop and never blocks: it either
accepts the request into a bounded queue or suppresses it. A background
worker delivers accepted requests through a ``NotificationTransport``,
retrying a bounded number of times with exponential backoff before
dropping the request with a logged record.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import requests

from ..core.config import NotificationConfig
from ..core.errors import NotificationTransportFailure
from ..perception.classes import ObjectClass
from ..perception.tracker import TrackedTarget

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evidence:
    """Snapshot attached to a notification.

    Attributes:
        target: Tracked target that triggered the notification
        timestamp: Control-loop time of the sighting
        unit_id: Identity of the reporting unit
        mode: Operating mode name at the time of the sighting
        image_path: Last captured frame on disk, if any
    """
    target: TrackedTarget
    timestamp: float
    unit_id: int = 0
    mode: str = ""
    image_path: Optional[str] = None


@dataclass
class NotificationRequest:
    """Queued outbound notification."""
    label: ObjectClass
    evidence: Evidence
    attempts: int = 0
    accepted_at: float = field(default_factory=time.monotonic)

    @property
    def message(self) -> str:
        return f"{self.label.value} detected."


class NotificationTransport:
    """Push-notification backend. ``send`` raises on failure."""

    def send(self, message: str, evidence: Evidence) -> None:
        raise NotImplementedError


class LoggingNotifyTransport(NotificationTransport):
    """Dry-run transport that only logs notifications."""

    def send(self, message: str, evidence: Evidence) -> None:
        logger.info(f"[notify] unit {evidence.unit_id}: {message}")


class HttpNotifyTransport(NotificationTransport):
    """Bearer-token multipart POST (LINE Notify compatible form)."""

    def __init__(self, endpoint: str, token: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, message: str, evidence: Evidence) -> None:
        headers = {"Authorization": f"Bearer {self.token}"}
        data = {"message": message}
        try:
            if evidence.image_path:
                with open(evidence.image_path, "rb") as image:
                    response = self._session.post(
                        self.endpoint,
                        headers=headers,
                        data=data,
                        files={"imageFile": image},
                        timeout=self.timeout,
                    )
            else:
                response = self._session.post(self.endpoint, headers=headers, data=data, timeout=self.timeout)
        except (requests.RequestException, OSError) as e:
            raise NotificationTransportFailure(str(e)) from e

        if not 200 <= response.status_code < 300:
            raise NotificationTransportFailure(f"HTTP {response.status_code}: {response.text[:200]}")


class NotificationDispatcher:
    """Deduplicating, rate-limited, asynchronous notification sender.

    Example:
        dispatcher = NotificationDispatcher(config.notification, transport)
        dispatcher.start()

        # Control loop:
        dispatcher.notify(ObjectClass.BEAR, evidence)  # True: accepted
        dispatcher.notify(ObjectClass.BEAR, evidence)  # False: cooldown

        dispatcher.stop()
    """

    def __init__(
        self,
        config: NotificationConfig,
        transport: NotificationTransport,
        clock: Callable[[], float] = time.monotonic,
        image_fn: Optional[Callable[[], Optional[str]]] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Notification configuration
            transport: Push transport
            clock: Clock used for the cooldown window
            image_fn: Saves the current camera frame and returns its path;
                called on the worker thread for requests without an image
        """
        self.config = config
        self.transport = transport
        self._clock = clock
        self._image_fn = image_fn
        self._queue: queue.Queue[NotificationRequest] = queue.Queue(maxsize=config.queue_size)
        self._last_accepted: dict[ObjectClass, float] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Statistics
        self._sent = 0
        self._suppressed = 0
        self._dropped = 0
        self._failed = 0

    def notify(self, label: ObjectClass, evidence: Evidence) -> bool:
        """Request a notification for a sighting.

        Args:
            label: Detected class
            evidence: Snapshot of the sighting

        Returns:
            True if accepted for delivery, False if suppressed or dropped
        """
        if not label.policy.notify:
            return False

        now = self._clock()
        last = self._last_accepted.get(label)
        if last is not None and now - last < self.config.cooldown_s:
            self._suppressed += 1
            logger.debug(f"{label.value} notification suppressed ({now - last:.1f}s since last)")
            return False

        request = NotificationRequest(label=label, evidence=evidence, accepted_at=now)
        try:
            self._queue.put_nowait(request)
        except queue.Full:
            self._dropped += 1
            logger.warning(f"Notification queue full, dropping {label.value} notification")
            return False

        self._last_accepted[label] = now
        logger.info(f"{label.value} notification queued")
        return True

    def start(self) -> None:
        """Start the delivery worker."""
        if self._thread is not None:
            logger.warning("Notification dispatcher already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="notifier", daemon=True)
        self._thread.start()
        logger.info("Notification dispatcher started")

    def stop(self, flush: bool = False, timeout: float = 2.0) -> None:
        """Stop the worker, abandoning (or trying once) pending requests.

        Args:
            flush: Attempt each pending request once, without retries
            timeout: Seconds to wait for the worker thread
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

        pending = self._drain()
        if flush:
            for request in pending:
                self._deliver_once(request)
        elif pending:
            self._dropped += len(pending)
            logger.info(f"Abandoned {len(pending)} pending notification(s)")
        logger.info("Notification dispatcher stopped")

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Deliver one queued request (with retries). Used by the worker.

        Returns:
            True if a request was taken from the queue
        """
        try:
            request = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        self._deliver(request)
        return True

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.process_next(timeout=0.1)

    def _deliver(self, request: NotificationRequest) -> bool:
        """Send with bounded exponential backoff, then drop."""
        self._attach_image(request)
        for attempt in range(self.config.max_retries + 1):
            if attempt > 0:
                delay = self.config.backoff_s * 2 ** (attempt - 1)
                # Shutdown interrupts the backoff and abandons the request
                if self._stop_event.wait(delay):
                    self._dropped += 1
                    logger.info(f"{request.label.value} notification abandoned on shutdown")
                    return False
            if self._deliver_once(request, final=attempt == self.config.max_retries):
                return True

        self._failed += 1
        logger.error(
            f"Dropping {request.label.value} notification after {request.attempts} attempt(s)"
        )
        return False

    def _attach_image(self, request: NotificationRequest) -> None:
        if self._image_fn is None or request.evidence.image_path is not None:
            return
        try:
            path = self._image_fn()
        except Exception as e:
            logger.warning(f"Could not capture evidence image: {e}")
            return
        if path:
            request.evidence = replace(request.evidence, image_path=path)

    def _deliver_once(self, request: NotificationRequest, final: bool = True) -> bool:
        request.attempts += 1
        try:
            self.transport.send(request.message, request.evidence)
        except NotificationTransportFailure as e:
            log = logger.warning if final else logger.info
            log(f"Notification attempt {request.attempts} failed: {e}")
            return False
        except Exception as e:
            logger.warning(f"Notification transport error on attempt {request.attempts}: {e}")
            return False

        self._sent += 1
        logger.info(f"Sent notification: {request.message}")
        return True

    def _drain(self) -> list[NotificationRequest]:
        pending = []
        while True:
            try:
                pending.append(self._queue.get_nowait())
            except queue.Empty:
                return pending

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> dict:
        """Delivery statistics."""
        return {
            "sent": self._sent,
            "suppressed": self._suppressed,
            "dropped": self._dropped,
            "failed": self._failed,
            "pending": self._queue.qsize(),
        }

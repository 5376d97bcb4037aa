"""
Request-scoped progress events.

The bus is a live notification channel: it fans events out to subscribers
and keeps no history. Each request has exactly one writer
(``RequestProgress``) which emits stage completions in pipeline order and a
single terminal event. Discarding superseded requests is the caller's job;
``RequestTracker`` and ``StaleFilter`` implement that side.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
import itertools
import logging
from threading import Lock
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RESOLVE = "resolve"
    DOWNLOAD = "download"
    VERIFY = "verify"
    EXTRACT = "extract"
    LOAD_RUNTIME = "load_runtime"
    PREPROCESS = "preprocess"
    INFER = "infer"
    POSTPROCESS = "postprocess"
    ENCODE = "encode"
    DONE = "done"
    ERROR = "error"


PIPELINE_ORDER: List[Stage] = [
    Stage.RESOLVE,
    Stage.DOWNLOAD,
    Stage.VERIFY,
    Stage.EXTRACT,
    Stage.LOAD_RUNTIME,
    Stage.PREPROCESS,
    Stage.INFER,
    Stage.POSTPROCESS,
    Stage.ENCODE,
]
TERMINAL_STAGES = frozenset({Stage.DONE, Stage.ERROR})


@dataclass(frozen=True)
class ProgressEvent:
    request_id: int
    stage: Stage
    url: Optional[str] = None
    downloaded: Optional[int] = None
    total: Optional[int] = None
    done: Optional[bool] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> dict:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        payload["stage"] = self.stage.value
        return payload


Subscriber = Callable[[ProgressEvent], None]


class Subscription:
    def __init__(self, bus: "EventBus", token: int) -> None:
        self._bus = bus
        self._token = token

    def close(self) -> None:
        self._bus._remove(self._token)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EventBus:
    """Thread-safe fan-out of progress events to subscribers."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: Dict[int, tuple] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, callback: Subscriber, request_id: Optional[int] = None) -> Subscription:
        """Register ``callback`` for all events, or only those of ``request_id``."""
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (callback, request_id)
        return Subscription(self, token)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            targets = list(self._subscribers.values())
        for callback, request_id in targets:
            if request_id is not None and request_id != event.request_id:
                continue
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                # A broken consumer must not fail the request it observes.
                logger.exception("progress subscriber failed for request %s", event.request_id)


class RequestProgress:
    """Single writer of the event stream for one request id."""

    def __init__(self, bus: EventBus, request_id: int) -> None:
        self.bus = bus
        self.request_id = request_id
        self._position = -1
        self._terminal: Optional[Stage] = None
        self._lock = Lock()

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    @property
    def current_stage(self) -> Optional[Stage]:
        if self._position < 0:
            return None
        return PIPELINE_ORDER[self._position]

    def _publish(self, **fields) -> None:
        self.bus.publish(ProgressEvent(request_id=self.request_id, **fields))

    def _move_to(self, stage: Stage) -> None:
        target = PIPELINE_ORDER.index(stage)
        if target <= self._position:
            raise ValueError(f"stage {stage.value} already completed for request {self.request_id}")
        # Stages with nothing to do still report completion.
        for skipped in PIPELINE_ORDER[self._position + 1 : target]:
            self._publish(stage=skipped, done=True, message="skipped")
        self._position = target

    def advance(self, stage: Stage, message: Optional[str] = None) -> None:
        """Emit the single completion event for ``stage``."""
        with self._lock:
            if self._terminal is not None:
                raise ValueError(f"request {self.request_id} already finished")
            self._move_to(stage)
            self._publish(stage=stage, done=True, message=message)

    def report_download(self, url: str, downloaded: int, total: Optional[int]) -> None:
        """Emit an in-stage byte counter update for the download stage."""
        with self._lock:
            if self._terminal is not None:
                return
            if self._position >= PIPELINE_ORDER.index(Stage.DOWNLOAD):
                return
            self._publish(stage=Stage.DOWNLOAD, url=url, downloaded=downloaded, total=total, done=False)

    def finish(self, message: Optional[str] = None) -> None:
        with self._lock:
            if self._terminal is not None:
                raise ValueError(f"request {self.request_id} already finished")
            self._terminal = Stage.DONE
            self._publish(stage=Stage.DONE, done=True, message=message)

    def fail(self, error: BaseException) -> None:
        with self._lock:
            if self._terminal is not None:
                raise ValueError(f"request {self.request_id} already finished")
            self._terminal = Stage.ERROR
            self._publish(stage=Stage.ERROR, done=True, message=str(error))


class RequestTracker:
    """Caller-side bookkeeping of the latest issued request id."""

    def __init__(self, start: int = 0) -> None:
        self._lock = Lock()
        self._latest = start

    @property
    def latest(self) -> int:
        with self._lock:
            return self._latest

    def issue(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def observe(self, request_id: int) -> None:
        """Record a caller-assigned id; ids never move backwards."""
        with self._lock:
            self._latest = max(self._latest, request_id)

    def is_stale(self, request_id: int) -> bool:
        return request_id < self.latest


class StaleFilter:
    """Subscriber wrapper that drops events of superseded requests."""

    def __init__(self, tracker: RequestTracker, callback: Subscriber) -> None:
        self.tracker = tracker
        self.callback = callback
        self.dropped = 0

    def __call__(self, event: ProgressEvent) -> None:
        if self.tracker.is_stale(event.request_id):
            self.dropped += 1
            logger.debug("dropping stale %s event for request %s", event.stage.value, event.request_id)
            return
        self.callback(event)

"""
Concurrent and batch execution on top of the shared pipeline.

`RemovalWorker` runs requests on a thread pool so an interactive caller can
fire a new request whenever its options change. Only the newest request's
results and progress reach the caller; superseded ones still run to
completion (sharing any in-flight downloads) but are dropped on delivery.

`process_batch` is the synchronous entry point for queue consumers that
already hold the image bytes.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Callable, Iterable, List, Optional

from . import config
from .errors import RemovalError
from .events import ProgressEvent, StaleFilter
from .pipeline import RemovalOptions, RemovalResult, RemovalService, get_service

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    request_id: int
    future: Future


class RemovalWorker:
    def __init__(self, service: Optional[RemovalService] = None, max_workers: Optional[int] = None) -> None:
        self.service = service or get_service()
        self.tracker = self.service.tracker
        workers = max_workers or config.get_settings().max_workers
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rembg-worker")

    def submit(
        self,
        image_bytes: bytes,
        options: Optional[RemovalOptions] = None,
        on_result: Optional[Callable[[RemovalResult], None]] = None,
        on_error: Optional[Callable[[int, BaseException], None]] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> Submission:
        """Queue a request; it supersedes every request submitted before it."""
        request = self.service.new_request(image_bytes, options)
        progress = StaleFilter(self.tracker, on_progress) if on_progress else None

        def run() -> RemovalResult:
            try:
                result = self.service.remove(request, on_progress=progress)
            except BaseException as exc:
                if on_error is not None and not self.tracker.is_stale(request.request_id):
                    on_error(request.request_id, exc)
                elif on_error is not None:
                    logger.debug("dropping stale error for request %s: %s", request.request_id, exc)
                raise
            if on_result is not None:
                if self.tracker.is_stale(request.request_id):
                    logger.debug("dropping stale result for request %s", request.request_id)
                else:
                    on_result(result)
            return result

        logger.debug("submitted request %s", request.request_id)
        return Submission(request_id=request.request_id, future=self._executor.submit(run))

    def is_stale(self, request_id: int) -> bool:
        return self.tracker.is_stale(request_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "RemovalWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


@dataclass
class BatchItem:
    image_bytes: bytes
    options: RemovalOptions = field(default_factory=RemovalOptions)
    name: str = ""


def process_batch(items: Iterable[BatchItem], service: Optional[RemovalService] = None) -> List[RemovalResult]:
    """
    Process a batch of images synchronously.

    Returns results matching the input order. The first failing item stops
    the batch and its ``RemovalError`` propagates to the caller.
    """
    service = service or get_service()
    outputs: List[RemovalResult] = []
    for item in items:
        logger.info("Processing batch item %s model=%s", item.name or "<bytes>", item.options.model)
        request = service.new_request(item.image_bytes, item.options)
        try:
            outputs.append(service.remove(request))
        except RemovalError as exc:
            logger.error("Batch item %s failed [%s]: %s", item.name or request.request_id, exc.code, exc)
            raise
    return outputs

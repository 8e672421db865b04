"""Batch Concurrency Controller

Fans the Session Coordinator out over many files with bounded parallelism.

Workers never touch shared state: each returns its finished Document, and
the controller thread folds those results into a lock-guarded aggregate.
Progress sinks receive an immutable BatchProgress snapshot after every
document.
"""

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set
import logging
import os
import threading
import time

from .cancellation import CancellationToken, NEVER_CANCELLED
from .models import BatchProgress, Document, DocumentStatus
from .session import DocumentSessionCoordinator

logger = logging.getLogger(__name__)

RECENT_ERRORS_SIZE = 5

BatchProgressSink = Callable[[BatchProgress], None]


def worker_count(configured_max: int, cpu_count: Optional[int] = None) -> int:
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(1, min(configured_max, cpus * 2))


def changed_link_key(file_path: Path | str, link_id: str) -> str:
    """Dedup key for a changed hyperlink; compares case-insensitively."""
    return f"{os.path.normcase(str(file_path))}:{link_id}".lower()


class BatchAggregate:
    """Cumulative batch statistics behind a single lock."""

    def __init__(self, total: int):
        self._lock = threading.Lock()
        self._total = total
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._average = 0.0
        self._recent_errors: Deque[str] = deque(maxlen=RECENT_ERRORS_SIZE)
        self._changed_links: Set[str] = set()
        self._current: Optional[str] = None

    def record(self, document: Document, elapsed: float) -> BatchProgress:
        with self._lock:
            self._processed += 1
            # Rolling average over all processed documents.
            self._average += (elapsed - self._average) / self._processed
            if document.status == DocumentStatus.COMPLETED:
                self._succeeded += 1
            else:
                self._failed += 1
                self._recent_errors.append(
                    f"{document.file_name}: {document.error_message or document.status.value}"
                )
            for link_id in document.changed_link_ids():
                self._changed_links.add(changed_link_key(document.file_path, link_id))
            self._current = document.file_name
            return self._snapshot()

    def snapshot(self) -> BatchProgress:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> BatchProgress:
        return BatchProgress(
            total=self._total,
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            average_seconds=self._average,
            recent_errors=list(self._recent_errors),
            unique_hyperlinks_changed=set(self._changed_links),
            current_file=self._current,
        )


@dataclass
class BatchResult:
    documents: List[Document] = field(default_factory=list)
    progress: BatchProgress = field(default_factory=BatchProgress)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def all_succeeded(self) -> bool:
        return not self.cancelled and all(
            d.status == DocumentStatus.COMPLETED for d in self.documents
        )


class BatchController:
    def __init__(
        self,
        coordinator: DocumentSessionCoordinator,
        max_concurrent_documents: int = 200,
        cpu_count: Optional[int] = None,
    ):
        if coordinator is None:
            raise ValueError("coordinator is required")
        if max_concurrent_documents < 1:
            raise ValueError("max_concurrent_documents must be >= 1")
        self.coordinator = coordinator
        self.max_workers = worker_count(max_concurrent_documents, cpu_count)

    def _process_one(self, path: Path, token: CancellationToken) -> tuple[Document, float]:
        t0 = time.time()
        document = self.coordinator.process(path, token=token)
        return document, time.time() - t0

    def process(
        self,
        paths: Sequence[Path | str],
        progress: Optional[BatchProgressSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """
        Process ``paths`` with at most ``max_workers`` documents in flight.

        Documents are admitted in the given order. After cancellation no new
        documents are admitted; documents already running finish their own
        session (and recovery).
        """
        token = token or NEVER_CANCELLED
        paths = [Path(p) for p in paths]
        aggregate = BatchAggregate(total=len(paths))
        batch_start = time.time()

        logger.info(
            "Processing %d documents with %d workers", len(paths), self.max_workers
        )

        results: Dict[int, Document] = {}
        pending: Dict[Future, int] = {}
        queue = list(enumerate(paths))
        queue.reverse()

        log_interval = max(1, len(paths) // 10)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="doc"
        ) as executor:
            while queue or pending:
                while queue and len(pending) < self.max_workers and not token.is_cancelled:
                    idx, path = queue.pop()
                    pending[executor.submit(self._process_one, path, token)] = idx

                if not pending:
                    break

                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                for future in done:
                    idx = pending.pop(future)
                    document, elapsed = future.result()
                    results[idx] = document
                    snapshot = aggregate.record(document, elapsed)

                    if (
                        snapshot.processed == 1
                        or snapshot.processed == snapshot.total
                        or snapshot.processed % log_interval == 0
                    ):
                        logger.info(
                            "Batch progress: %d/%d (%.1f%%) - Success: %d, Failed: %d",
                            snapshot.processed,
                            snapshot.total,
                            snapshot.percent_complete,
                            snapshot.succeeded,
                            snapshot.failed,
                        )
                    if progress is not None:
                        progress(snapshot)

        cancelled = token.is_cancelled and len(results) < len(paths)
        if cancelled:
            logger.warning(
                "Batch cancelled: %d of %d documents were not started",
                len(paths) - len(results),
                len(paths),
            )

        final = aggregate.snapshot()
        duration = time.time() - batch_start
        logger.info(
            "✓ Batch finished in %.2fs (succeeded=%d, failed=%d, unique links changed=%d)",
            duration,
            final.succeeded,
            final.failed,
            len(final.unique_hyperlinks_changed),
        )
        return BatchResult(
            documents=[results[i] for i in sorted(results)],
            progress=final,
            cancelled=cancelled,
            duration_seconds=duration,
        )

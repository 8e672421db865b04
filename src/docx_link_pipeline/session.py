"""Session Coordinator

Runs the whole edit of one document inside a single open package handle:

    OPENED -> VALIDATED -> SNAPSHOTTED -> METADATA_EXTRACTED -> LINKS_EXTRACTED
    -> PRUNED -> RESOLVED -> MUTATED -> REPLACED -> OPTIMIZED -> SAVED
    -> VERIFIED -> CLOSED

with FAILED reachable from every state. The Integrity Guard runs after every
mutating stage. Filesystem transitions go through the retry engine. The
write handle is released before the saved file is reopened for
verification.

On failure the original file is restored from its backup (when one was
taken). Restoration ignores cancellation so a file is never left
half-restored. Expected failures never escape ``process``: they come back
as a Document with status FAILED or RECOVERED.
"""

from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar
from uuid import uuid4
import logging
import os
import re
import threading
import time

from docx.document import Document as DocxDocument
from docx.oxml.ns import qn

from .backup import BackupService
from .cancellation import CancellationToken, NEVER_CANCELLED
from .config import AppSettings
from .errors import OperationCancelledError, ResolverError
from .extractor import bind_hyperlinks, extract_hyperlinks, extract_links
from .integrity import IntegrityGuard, ValidationIssue
from .models import (
    ChangeType,
    Document,
    DocumentMetadata,
    DocumentStatus,
    SessionSnapshot,
)
from .mutation import MutationEngine, MutationOptions
from .ooxml import open_document, relationship_map, save_atomically
from .optimizer import TextOptimizer
from .pruner import prune_invisible_links
from .replacement import HyperlinkRuleMatcher, TextReplacer
from .resolver import MetadataResolver, ResolutionResult, apply_resolution, collect_lookup_ids
from .retry import FILE_POLICY, OPENXML_POLICY, execute

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressSink = Callable[[str], None]

DIRTY_FIELD_RE = re.compile(r"\b(TOC|HYPERLINK|PAGE|PAGEREF|REF)\b", re.IGNORECASE)


class SessionState(str, Enum):
    OPENED = "Opened"
    VALIDATED = "Validated"
    SNAPSHOTTED = "Snapshotted"
    METADATA_EXTRACTED = "MetadataExtracted"
    LINKS_EXTRACTED = "LinksExtracted"
    PRUNED = "Pruned"
    RESOLVED = "Resolved"
    MUTATED = "Mutated"
    REPLACED = "Replaced"
    OPTIMIZED = "Optimized"
    SAVED = "Saved"
    VERIFIED = "Verified"
    CLOSED = "Closed"
    FAILED = "Failed"


_ORDER = [s for s in SessionState if s != SessionState.FAILED]


class _Session:
    """Per-document state tracker; enforces forward-only transitions."""

    def __init__(self, document: Document, progress: Optional[ProgressSink]):
        self.document = document
        self.progress = progress
        self.state: Optional[SessionState] = None
        self.history: List[SessionState] = []
        self.snapshot: Optional[SessionSnapshot] = None
        self.relationships: Dict[str, str] = {}

    def transition(self, state: SessionState, message: Optional[str] = None) -> None:
        if state != SessionState.FAILED and self.state is not None:
            if _ORDER.index(state) <= _ORDER.index(self.state):
                raise RuntimeError(f"Illegal session transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)
        logger.debug("%s: %s", self.document.file_name, state.value)
        if message:
            self.report(message)

    def report(self, message: str) -> None:
        if self.progress is not None:
            self.progress(message)


class PathLocks:
    """
    Per-file-path semaphores serializing repeated opens of one path.

    An entry lives only while some thread holds or waits for its path.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[threading.Semaphore, int]] = {}

    def active_count(self) -> int:
        """Number of paths currently held or awaited."""
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _key(path: Path | str) -> str:
        return os.path.normcase(str(Path(path).resolve()))

    @contextmanager
    def hold(self, path: Path | str) -> Iterator[None]:
        key = self._key(path)
        with self._lock:
            sem, users = self._entries.get(key, (None, 0))
            if sem is None:
                sem = threading.Semaphore(1)
            self._entries[key] = (sem, users + 1)

        sem.acquire()
        try:
            yield
        finally:
            sem.release()
            with self._lock:
                _, users = self._entries[key]
                if users <= 1:
                    del self._entries[key]
                else:
                    self._entries[key] = (sem, users - 1)


def extract_metadata(docx: DocxDocument) -> DocumentMetadata:
    props = docx.core_properties
    word_count = 0
    for p in docx.element.body.iter(qn("w:p")):
        text = "".join(t.text or "" for t in p.iter(qn("w:t")))
        word_count += len(text.split())
    return DocumentMetadata(
        title=props.title or None,
        author=props.author or None,
        word_count=word_count,
        created=props.created,
        modified=props.modified,
    )


def mark_fields_dirty(docx: DocxDocument) -> int:
    """Flag TOC/HYPERLINK/PAGE/REF fields so Word refreshes them on open."""
    body = docx.element.body
    marked = 0

    for fld in body.iter(qn("w:fldSimple")):
        if DIRTY_FIELD_RE.search(fld.get(qn("w:instr")) or ""):
            fld.set(qn("w:dirty"), "true")
            marked += 1

    # Complex fields: begin ... instrText ... separate ... end, possibly
    # nested and spanning paragraphs. Elements arrive in document order.
    stack: List[list] = []
    for el in body.iter(qn("w:fldChar"), qn("w:instrText")):
        if el.tag == qn("w:instrText"):
            if stack:
                stack[-1][1] += el.text or ""
            continue
        kind = el.get(qn("w:fldCharType"))
        if kind == "begin":
            stack.append([el, "", False])
        elif kind in ("separate", "end") and stack:
            begin, instr, done = stack[-1]
            if not done:
                stack[-1][2] = True
                if DIRTY_FIELD_RE.search(instr):
                    begin.set(qn("w:dirty"), "true")
                    marked += 1
            if kind == "end":
                stack.pop()

    if marked:
        logger.debug("Marked %d fields dirty", marked)
    return marked


class DocumentSessionCoordinator:
    """Processes one document end to end inside a single session."""

    def __init__(
        self,
        settings: AppSettings,
        resolver: Optional[MetadataResolver] = None,
        backup_service: Optional[BackupService] = None,
        guard: Optional[IntegrityGuard] = None,
        path_locks: Optional[PathLocks] = None,
    ):
        if settings is None:
            raise ValueError("settings is required")
        self.settings = settings
        self.guard = guard or IntegrityGuard(settings.integrity)
        self.resolver = resolver or MetadataResolver(settings.api)
        self.backups = backup_service or BackupService(settings.backup)
        self.path_locks = path_locks or PathLocks()
        self.engine = MutationEngine(MutationOptions.from_settings(settings))
        self.rule_matcher = HyperlinkRuleMatcher(settings.replacement.hyperlink_rules)
        self.text_replacer = TextReplacer(
            settings.replacement.text_rules,
            preserve_capitalization=settings.replacement.preserve_capitalization,
        )
        self.optimizer = TextOptimizer()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(
        self,
        path: Path | str,
        progress: Optional[ProgressSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> Document:
        """
        Run the full pipeline on ``path``.

        Args:
            path: Document to edit in place
            progress: Optional sink receiving ordered status strings
            token: Cooperative cancellation token

        Returns:
            The Document projection; its status tells the outcome

        Raises:
            ValueError: If ``path`` is None or empty
        """
        if path is None or not str(path).strip():
            raise ValueError("path is required")
        path = Path(path)
        token = token or NEVER_CANCELLED

        document = Document(id=uuid4().hex, file_path=path, file_name=path.name)
        document.status = DocumentStatus.PROCESSING
        session = _Session(document, progress)
        t0 = time.time()

        try:
            self._run(session, token)
        except Exception as e:
            logger.exception("Processing failed for %s", path.name)
            self._finish_failed(session, e)
            return document

        document.finish(DocumentStatus.COMPLETED)
        logger.info("✓ %s (%.2fs)", document.change_log.summary, time.time() - t0)
        return document

    def run_atomic(
        self,
        path: Path | str,
        operation: Callable[[DocxDocument], T],
        save: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """
        Open ``path``, run ``operation`` on it and optionally save.

        Repeated calls for the same path are serialized. Errors propagate to
        the caller.
        """
        path = Path(path)
        token = token or NEVER_CANCELLED
        with self.path_locks.hold(path):
            docx = execute(lambda: open_document(path), FILE_POLICY, token, f"open {path.name}")
            result = operation(docx)
            if save:
                self.guard.check(docx, "before save")
                execute(lambda: save_atomically(docx, path), FILE_POLICY, token, f"save {path.name}")
                docx = None
                self.guard.verify_file(path)
            return result

    def validate(self, path: Path | str) -> List[ValidationIssue]:
        """Non-ignorable issues of a document, without modifying it."""
        container = self.guard.filter_issues(self.guard.check_container(path))
        if container:
            return container
        return self.run_atomic(
            path, lambda d: self.guard.filter_issues(self.guard.collect_issues(d))
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _check_input(self, path: Path) -> None:
        if not path.exists():
            raise FileNotFoundError(f"Document not found: {path}")
        extensions = self.settings.processing.supported_extensions
        if path.suffix.lower() not in extensions:
            raise ValueError(
                f"Unsupported file type '{path.suffix}'; expected one of {', '.join(extensions)}"
            )

    def _run(self, session: _Session, token: CancellationToken) -> None:
        document = session.document
        path = document.file_path
        log = document.change_log

        self._check_input(path)
        token.raise_if_cancelled()

        if self.settings.processing.create_backup:
            session.report("Creating backup...")
            document.backup_path = self.backups.create_backup(path)

        token.raise_if_cancelled()
        session.report("Opening document...")
        docx = execute(lambda: open_document(path), FILE_POLICY, token, f"open {path.name}")
        session.transition(SessionState.OPENED)

        self.guard.check(docx, "after open")
        session.transition(SessionState.VALIDATED, "Document validated")

        session.snapshot = SessionSnapshot(relationships=relationship_map(docx.part))
        session.transition(SessionState.SNAPSHOTTED)

        document.metadata = extract_metadata(docx)
        session.transition(SessionState.METADATA_EXTRACTED)

        token.raise_if_cancelled()
        session.report("Extracting hyperlinks...")
        handles, hyperlinks = extract_hyperlinks(docx, log)
        document.hyperlinks = hyperlinks
        session.transition(SessionState.LINKS_EXTRACTED)

        removed = prune_invisible_links(docx, handles, hyperlinks, log)
        self.guard.check(docx, "after pruning")
        session.transition(SessionState.PRUNED, f"Removed {removed} invisible hyperlinks")

        token.raise_if_cancelled()
        result = self._resolve(session, token)
        session.transition(SessionState.RESOLVED)

        token.raise_if_cancelled()
        session.report("Updating hyperlinks...")
        pairs = bind_hyperlinks(extract_links(docx), hyperlinks)
        rule_records = self.rule_matcher.bind(pairs, result, log)
        changed = self.engine.apply(docx, pairs, result, log, rule_records)
        self.guard.check(docx, "after mutation")
        session.transition(SessionState.MUTATED)

        replaced = self.text_replacer.apply(docx, log)
        self.guard.check(docx, "after replacement")
        session.transition(SessionState.REPLACED)

        optimized = 0
        if self.settings.processing.optimize_text:
            optimized = self.optimizer.optimize(docx, log).total
            self.guard.check(docx, "after optimization")
        session.transition(SessionState.OPTIMIZED)

        token.raise_if_cancelled()
        session.relationships = relationship_map(docx.part)
        if changed or removed or replaced or optimized:
            if changed or removed:
                mark_fields_dirty(docx)
            self.guard.check(docx, "before save")
            session.report("Saving document...")
            execute(lambda: save_atomically(docx, path), FILE_POLICY, token, f"save {path.name}")
            session.transition(SessionState.SAVED)

            # Release the write handle before reopening for verification.
            docx = None
            session.report("Verifying document integrity...")
            execute(
                lambda: self.guard.verify_file(path),
                OPENXML_POLICY,
                token,
                f"verify {path.name}",
            )
            session.transition(SessionState.VERIFIED)
        else:
            docx = None
            logger.debug("%s: no changes; save skipped", document.file_name)
            session.transition(SessionState.SAVED)
            session.transition(SessionState.VERIFIED)

        session.transition(SessionState.CLOSED, "Done")

    def _resolve(
        self,
        session: _Session,
        token: CancellationToken,
    ) -> Optional[ResolutionResult]:
        document = session.document
        if not self.settings.processing.validate_hyperlinks:
            return None

        # Removed links keep their ids and still take part in the lookup.
        ids = collect_lookup_ids(document.hyperlinks, self.rule_matcher.content_ids())
        if not ids:
            return None

        session.report(f"Resolving {len(ids)} lookup identifiers...")
        try:
            result = self.resolver.resolve(ids, token)
        except OperationCancelledError:
            raise
        except ResolverError as e:
            logger.error("Metadata lookup failed for %s: %s", document.file_name, e)
            document.change_log.add(
                ChangeType.ERROR,
                "Metadata lookup failed",
                details=str(e),
            )
            return None

        apply_resolution(document.hyperlinks, result, document.change_log)
        return result

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _finish_failed(self, session: _Session, error: Exception) -> None:
        document = session.document
        failed_in = session.state.value if session.state else "before open"
        session.transition(SessionState.FAILED)
        message = f"{type(error).__name__}: {error}"

        if session.snapshot is not None and session.relationships:
            logger.debug(
                "Relationship changes before failure: %s",
                session.snapshot.diff(session.relationships),
            )

        document.change_log.add(
            ChangeType.ERROR,
            "Processing failed",
            details=f"{message} (state: {failed_in})",
        )

        if document.backup_path is None:
            document.finish(DocumentStatus.FAILED, f"{message}; no backup available")
            return

        # Recovery is not cancellable.
        session.report("Restoring from backup...")
        if self._restore(document):
            document.finish(DocumentStatus.RECOVERED, f"{message}; restored from backup")
        else:
            document.finish(DocumentStatus.FAILED, f"{message}; restore from backup failed")

    def _restore(self, document: Document) -> bool:
        backup = self.settings.backup
        if self.backups.restore(
            document.file_path,
            document.backup_path,
            timeout=backup.restore_timeout_seconds,
        ):
            return True
        logger.warning(
            "First restore attempt failed for %s; retrying with %.0fs timeout",
            document.file_name,
            backup.restore_retry_timeout_seconds,
        )
        return self.backups.restore(
            document.file_path,
            document.backup_path,
            timeout=backup.restore_retry_timeout_seconds,
        )

"""Data Models Module

Defines Pydantic models for representing documents and hyperlinks at the
different stages of the pipeline: the per-link projection extracted from an
open package, metadata records returned by the lookup service, the audit
change log, and the batch progress snapshots reported by the controller.
"""

from collections import Counter
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class DocumentStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    RECOVERED = "Recovered"


TERMINAL_STATUSES = {
    DocumentStatus.COMPLETED,
    DocumentStatus.FAILED,
    DocumentStatus.RECOVERED,
}


class HyperlinkStatus(str, Enum):
    UNKNOWN = "Unknown"
    ACTIVE = "Active"
    EXPIRED = "Expired"
    NOT_FOUND = "NotFound"
    INVALID = "Invalid"


class HyperlinkAction(str, Enum):
    NONE = "None"
    UPDATED = "Updated"
    REMOVED = "Removed"


class ChangeType(str, Enum):
    INFORMATION = "Information"
    HYPERLINK_UPDATED = "HyperlinkUpdated"
    HYPERLINK_REMOVED = "HyperlinkRemoved"
    HYPERLINK_STATUS_ADDED = "HyperlinkStatusAdded"
    CONTENT_ID_ADDED = "ContentIdAdded"
    TITLE_REPLACED = "TitleReplaced"
    POSSIBLE_TITLE_CHANGE = "PossibleTitleChange"
    TEXT_OPTIMIZED = "TextOptimized"
    TEXT_REPLACED = "TextReplaced"
    ERROR = "Error"
    WARNING = "Warning"


class ChangeEntry(BaseModel):
    """Single append-only audit record."""

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    description: str
    element_id: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


# Ordered (change type, label) pairs used to build the summary line.
_SUMMARY_PARTS = [
    (ChangeType.HYPERLINK_UPDATED, "hyperlinks updated"),
    (ChangeType.HYPERLINK_REMOVED, "invisible hyperlinks deleted"),
    (ChangeType.CONTENT_ID_ADDED, "content IDs added"),
    (ChangeType.TITLE_REPLACED, "titles replaced"),
    (ChangeType.POSSIBLE_TITLE_CHANGE, "possible title changes"),
    (ChangeType.HYPERLINK_STATUS_ADDED, "status suffixes added"),
    (ChangeType.TEXT_REPLACED, "text replacements"),
    (ChangeType.ERROR, "errors"),
]


class ChangeLog(BaseModel):
    """Ordered list of change entries for one document.

    Entries are never removed. Once the owning document reaches a terminal
    status the log is frozen and further appends raise ``RuntimeError``.
    """

    changes: List[ChangeEntry] = Field(default_factory=list)
    summary: str = ""

    _frozen: bool = PrivateAttr(default=False)

    def add(
        self,
        type: ChangeType,
        description: str,
        element_id: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        details: Optional[str] = None,
    ) -> ChangeEntry:
        if self._frozen:
            raise RuntimeError("Change log is frozen; document already finished")
        entry = ChangeEntry(
            type=type,
            description=description,
            element_id=element_id,
            old_value=old_value,
            new_value=new_value,
            details=details,
        )
        self.changes.append(entry)
        return entry

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for c in self.changes if c.type == change_type)

    def tally(self) -> Dict[ChangeType, int]:
        return dict(Counter(c.type for c in self.changes))

    def build_summary(self, file_name: str) -> str:
        """Derive the summary line by tallying entry types."""
        tally = self.tally()
        parts = [
            f"{tally[change_type]} {label}"
            for change_type, label in _SUMMARY_PARTS
            if tally.get(change_type)
        ]
        body = ", ".join(parts) if parts else "no changes required"
        self.summary = f"Processed {file_name}: {body}"
        return self.summary

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen


class DocumentMetadata(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    word_count: int = 0
    created: Optional[datetime] = None
    modified: Optional[datetime] = None


class Hyperlink(BaseModel):
    """In-memory projection of one hyperlink element.

    ``original_url`` is the complete address (address + ``#`` + fragment)
    observed when the link was first extracted. ``requires_update`` is true
    exactly when the planned URL or display text differs from what is
    currently in the open document.
    """

    id: str
    original_url: str = ""
    display_text: str = ""
    lookup_id: Optional[str] = None
    content_id: Optional[str] = None
    document_id: Optional[str] = None
    title: Optional[str] = None
    status: HyperlinkStatus = HyperlinkStatus.UNKNOWN
    requires_update: bool = False
    updated_url: Optional[str] = None
    error_message: Optional[str] = None
    action_taken: HyperlinkAction = HyperlinkAction.NONE

    @property
    def current_url(self) -> str:
        return self.updated_url or self.original_url


class DocumentRecord(BaseModel):
    """One lookup-service result. Immutable once received."""

    model_config = ConfigDict(frozen=True)

    document_id: Optional[str] = None
    content_id: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    lookup_id: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return (self.status or "").strip().lower() == "expired"


class LookupResponse(BaseModel):
    version: Optional[str] = None
    changes: Optional[str] = None
    results: List[DocumentRecord] = Field(default_factory=list)


class SessionSnapshot(BaseModel):
    """Relationship id -> target captured right after the handle is opened."""

    relationships: Dict[str, str] = Field(default_factory=dict)

    def diff(self, current: Dict[str, str]) -> Dict[str, List[str]]:
        return {
            "added": sorted(set(current) - set(self.relationships)),
            "removed": sorted(set(self.relationships) - set(current)),
            "retargeted": sorted(
                rid
                for rid in set(current) & set(self.relationships)
                if current[rid] != self.relationships[rid]
            ),
        }


class Document(BaseModel):
    """Projection of one package for the duration of one processing call."""

    id: str
    file_path: Path
    file_name: str
    status: DocumentStatus = DocumentStatus.PENDING
    hyperlinks: List[Hyperlink] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    change_log: ChangeLog = Field(default_factory=ChangeLog)
    backup_path: Optional[Path] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    processing_errors: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: DocumentStatus, error: Optional[str] = None) -> None:
        """Move to a terminal status, derive the summary and freeze the log."""
        if self.is_terminal:
            raise RuntimeError(
                f"Document {self.file_name} already finished with {self.status.value}"
            )
        if error:
            self.error_message = error
            self.processing_errors.append(error)
        self.status = status
        self.processed_at = datetime.now()
        self.change_log.build_summary(self.file_name)
        self.change_log.freeze()

    def changed_link_ids(self) -> Set[str]:
        """Ids of links touched by any link-level change entry."""
        link_types = {
            ChangeType.HYPERLINK_UPDATED,
            ChangeType.HYPERLINK_REMOVED,
            ChangeType.HYPERLINK_STATUS_ADDED,
            ChangeType.CONTENT_ID_ADDED,
            ChangeType.TITLE_REPLACED,
        }
        return {
            c.element_id
            for c in self.change_log.changes
            if c.type in link_types and c.element_id
        }


class BatchProgress(BaseModel):
    """Snapshot of the batch aggregate handed to progress sinks."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    average_seconds: float = 0.0
    recent_errors: List[str] = Field(default_factory=list)
    unique_hyperlinks_changed: Set[str] = Field(default_factory=set)
    current_file: Optional[str] = None

    @property
    def percent_complete(self) -> float:
        if not self.total:
            return 100.0
        return 100.0 * self.processed / self.total

"""Mutation Engine

Applies atomic per-link edits inside an open document session.

Each link goes through a small state machine::

    UNCHANGED -> {URL_CHANGED, TEXT_CHANGED, URL_AND_TEXT_CHANGED} -> PERSISTED

Planning is pure (``plan_link_edit`` only looks at the link, its resolved
record and the current element values); persistence is where the package is
touched. A retarget never mutates a relationship in place: a new
relationship is created, the element is repointed, and only then is the old
relationship removed. Anything created before a failure is rolled back, so
no orphaned relationships are left behind.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple
import logging

from docx.document import Document as DocxDocument
from docx.oxml.ns import qn

from .config import AppSettings
from .errors import RelationshipError
from .extractor import LinkHandle, extract_docid_param
from .models import (
    ChangeLog,
    ChangeType,
    DocumentRecord,
    Hyperlink,
    HyperlinkAction,
    HyperlinkStatus,
)
from .ooxml import (
    add_hyperlink_relationship,
    drop_relationship_if_unused,
    set_hyperlink_text,
)
from .resolver import EXPIRED_SUFFIX, NOT_FOUND_SUFFIX, ResolutionResult

logger = logging.getLogger(__name__)

VIEW_FRAGMENT = "!/view?docid="
SUFFIX_LENGTH = 9  # len(" (######)")


class LinkEditState(str, Enum):
    UNCHANGED = "Unchanged"
    URL_CHANGED = "UrlChanged"
    TEXT_CHANGED = "TextChanged"
    URL_AND_TEXT_CHANGED = "UrlAndTextChanged"
    PERSISTED = "Persisted"


@dataclass
class PlannedChange:
    type: ChangeType
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[str] = None


@dataclass
class LinkEdit:
    link_id: str
    old_url: str
    new_url: str
    old_text: str
    new_text: str
    retarget: bool = False
    changes: List[PlannedChange] = field(default_factory=list)
    state: LinkEditState = LinkEditState.UNCHANGED

    @property
    def text_changed(self) -> bool:
        return self.new_text != self.old_text

    @property
    def requires_update(self) -> bool:
        return self.retarget or self.text_changed

    def classify(self) -> LinkEditState:
        if self.retarget and self.text_changed:
            self.state = LinkEditState.URL_AND_TEXT_CHANGED
        elif self.retarget:
            self.state = LinkEditState.URL_CHANGED
        elif self.text_changed:
            self.state = LinkEditState.TEXT_CHANGED
        else:
            self.state = LinkEditState.UNCHANGED
        return self.state


@dataclass
class MutationOptions:
    target_base_address: str
    add_content_ids: bool = True
    auto_replace_titles: bool = False
    report_title_differences: bool = True

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "MutationOptions":
        return cls(
            target_base_address=settings.api.target_base_address,
            add_content_ids=settings.processing.add_content_ids,
            auto_replace_titles=settings.validation.auto_replace_titles,
            report_title_differences=settings.validation.report_title_differences,
        )


def content_id_suffix(content_id: str) -> Tuple[str, str]:
    """
    Return (last6, last5) for a Content_ID.

    ``last6`` is the last six characters; a shorter numeric id is
    zero-left-padded ("12" -> "000012"). For ids shorter than six characters
    ``last5`` equals ``last6``, so the 5->6 digit upgrade never fires.
    """
    cid = (content_id or "").strip()
    if len(cid) >= 6:
        last6 = cid[-6:]
        return last6, last6[1:]
    last6 = cid.zfill(6) if cid.isdigit() else cid
    return last6, last6


def compose_target_url(base_address: str, chosen_id: str) -> str:
    return f"{base_address}#{VIEW_FRAGMENT}{chosen_id}"


def _strip_suffix(text: str, pattern: str) -> str:
    if len(pattern) == SUFFIX_LENGTH and text.lower().endswith(pattern.lower()):
        return text[:-SUFFIX_LENGTH].strip()
    return text.strip()


def _plan_retarget(
    edit: LinkEdit,
    record: DocumentRecord,
    options: MutationOptions,
) -> None:
    chosen = record.document_id or record.content_id
    if not chosen:
        return
    target = compose_target_url(options.target_base_address, chosen)
    current = edit.old_url

    is_local_file = current.lower().startswith("file:")
    docid = extract_docid_param(current)
    normalizes_content_id = bool(
        docid
        and record.content_id
        and record.document_id
        and docid.lower() == record.content_id.lower()
        and record.document_id.lower() != record.content_id.lower()
    )

    if target != current or is_local_file or normalizes_content_id:
        edit.retarget = True
        edit.new_url = target
        reason = "local file link" if is_local_file else f"docid={chosen}"
        edit.changes.append(
            PlannedChange(
                ChangeType.HYPERLINK_UPDATED,
                "Hyperlink URL updated",
                old_value=current,
                new_value=target,
                details=reason,
            )
        )


def _plan_content_id(
    edit: LinkEdit,
    record: DocumentRecord,
    options: MutationOptions,
    force_title: bool,
) -> None:
    text = edit.new_text
    lowered = text.lower()
    if EXPIRED_SUFFIX.lower() in lowered or NOT_FOUND_SUFFIX.lower() in lowered:
        return
    if not record.content_id:
        return

    last6, last5 = content_id_suffix(record.content_id)
    pattern6 = f" ({last6})"
    pattern5 = f" ({last5})"

    if options.add_content_ids:
        if text.endswith(pattern5) and not text.endswith(pattern6):
            new_text = text[: -len(pattern5)] + pattern6
            edit.changes.append(
                PlannedChange(
                    ChangeType.CONTENT_ID_ADDED,
                    "Upgraded 5-digit content ID to 6-digit",
                    old_value=text,
                    new_value=new_text,
                    details=f"Content ID: {last6}",
                )
            )
            text = new_text
        elif pattern6.lower() not in text.lower():
            new_text = text.strip() + pattern6
            edit.changes.append(
                PlannedChange(
                    ChangeType.CONTENT_ID_ADDED,
                    "Content ID appended",
                    old_value=text,
                    new_value=new_text,
                    details=f"Content ID: {last6}",
                )
            )
            text = new_text

    title = (record.title or "").strip()
    if title:
        current_title = _strip_suffix(text, pattern6)
        if current_title.lower() != title.lower():
            if options.auto_replace_titles or force_title:
                new_text = f"{title}{pattern6}"
                edit.changes.append(
                    PlannedChange(
                        ChangeType.TITLE_REPLACED,
                        "Title replaced",
                        old_value=text,
                        new_value=new_text,
                        details=f"Title: {title}",
                    )
                )
                text = new_text
            elif options.report_title_differences:
                edit.changes.append(
                    PlannedChange(
                        ChangeType.POSSIBLE_TITLE_CHANGE,
                        "Possible title change",
                        old_value=current_title,
                        new_value=title,
                        details=f"Content ID: {last6}",
                    )
                )

    edit.new_text = text


def _plan_status(edit: LinkEdit, status: HyperlinkStatus) -> None:
    text = edit.new_text
    lowered = text.lower()
    if status == HyperlinkStatus.EXPIRED:
        if lowered.endswith(EXPIRED_SUFFIX.lower()):
            return
        new_text = text + EXPIRED_SUFFIX
        description = "Added Expired status"
    elif status == HyperlinkStatus.NOT_FOUND:
        if EXPIRED_SUFFIX.lower() in lowered or NOT_FOUND_SUFFIX.lower() in lowered:
            return
        new_text = text + NOT_FOUND_SUFFIX
        description = "Added Not Found status"
    else:
        return
    edit.changes.append(
        PlannedChange(
            ChangeType.HYPERLINK_STATUS_ADDED,
            description,
            old_value=text,
            new_value=new_text,
        )
    )
    edit.new_text = new_text


def plan_link_edit(
    link: Hyperlink,
    handle: LinkHandle,
    record: Optional[DocumentRecord],
    options: MutationOptions,
    force_title: bool = False,
) -> LinkEdit:
    """
    Decide what should change for one link, without touching the package.

    Precedence: URL retarget, content-id suffix and title handling, then the
    independent status-suffix pass.
    """
    edit = LinkEdit(
        link_id=link.id,
        old_url=handle.url,
        new_url=handle.url,
        old_text=handle.display_text,
        new_text=handle.display_text,
    )
    if record is not None:
        _plan_retarget(edit, record, options)
        _plan_content_id(edit, record, options, force_title)
    _plan_status(edit, link.status)
    edit.classify()
    return edit


def _repoint(element, rid: str) -> None:
    element.set(qn("r:id"), rid)
    # The new target carries its own fragment.
    for attr in ("w:anchor", "w:docLocation"):
        element.attrib.pop(qn(attr), None)


def persist_link_edit(document: DocxDocument, handle: LinkHandle, edit: LinkEdit) -> None:
    """
    Write a planned edit into the open package.

    Raises:
        RelationshipError: If the retarget failed; the element and the
            relationship table are left as they were
    """
    if edit.retarget:
        part = document.part
        element = handle.element
        old_rid = handle.rel_id
        saved_attrs = {
            name: element.get(name)
            for name in (qn("r:id"), qn("w:anchor"), qn("w:docLocation"))
            if element.get(name) is not None
        }
        before = set(part.rels.keys())
        try:
            new_rid, created = add_hyperlink_relationship(part, edit.new_url)
            _repoint(element, new_rid)
        except Exception as e:
            for rid in set(part.rels.keys()) - before:
                part.rels.pop(rid, None)
            for name in (qn("r:id"), qn("w:anchor"), qn("w:docLocation")):
                element.attrib.pop(name, None)
            for name, value in saved_attrs.items():
                element.set(name, value)
            raise RelationshipError(
                f"Failed to retarget hyperlink {edit.link_id} to {edit.new_url}: {e}"
            ) from e

        if old_rid and old_rid != new_rid:
            drop_relationship_if_unused(part, old_rid)
        logger.debug(
            "Retargeted %s: %s -> %s (%s relationship)",
            edit.link_id,
            old_rid,
            new_rid,
            "new" if created else "reused",
        )

    if edit.text_changed:
        set_hyperlink_text(handle.element, edit.new_text)

    edit.state = LinkEditState.PERSISTED


class MutationEngine:
    """Applies planned edits for every bound link of a document."""

    def __init__(self, options: MutationOptions):
        if options is None:
            raise ValueError("options is required")
        if not options.target_base_address:
            raise ValueError("target_base_address must not be empty")
        self.options = options

    def apply(
        self,
        document: DocxDocument,
        pairs: Sequence[Tuple[LinkHandle, Hyperlink]],
        result: Optional[ResolutionResult],
        change_log: ChangeLog,
        rule_records: Optional[Dict[str, DocumentRecord]] = None,
    ) -> Set[str]:
        """
        Plan and persist edits for each (handle, link) pair.

        A failed retarget is recorded on the link and in the change log and
        does not stop the remaining links.

        Returns:
            Ids of links that were changed
        """
        rule_records = rule_records or {}
        changed: Set[str] = set()

        for handle, link in pairs:
            if link.action_taken == HyperlinkAction.REMOVED:
                continue

            forced = link.id in rule_records
            record = rule_records.get(link.id)
            if record is None and result is not None:
                record = result.get(link.lookup_id)

            edit = plan_link_edit(link, handle, record, self.options, force_title=forced)
            link.requires_update = edit.requires_update
            if not edit.requires_update:
                for change in edit.changes:
                    self._log(change_log, link, change)
                continue

            try:
                persist_link_edit(document, handle, edit)
            except RelationshipError as e:
                logger.error("%s", e)
                link.error_message = str(e)
                change_log.add(
                    ChangeType.ERROR,
                    "Failed to update hyperlink",
                    element_id=link.id,
                    old_value=edit.old_url,
                    new_value=edit.new_url,
                    details=str(e),
                )
                continue

            for change in edit.changes:
                self._log(change_log, link, change)

            if edit.retarget:
                link.updated_url = edit.new_url
            link.display_text = edit.new_text
            link.requires_update = False
            link.action_taken = HyperlinkAction.UPDATED
            changed.add(link.id)

            handle.display_text = edit.new_text
            if edit.retarget:
                handle.address, _, handle.sub_address = edit.new_url.partition("#")

        if changed:
            logger.info("✓ Updated %d hyperlinks", len(changed))
        return changed

    @staticmethod
    def _log(change_log: ChangeLog, link: Hyperlink, change: PlannedChange) -> None:
        change_log.add(
            change.type,
            change.description,
            element_id=link.id,
            old_value=change.old_value,
            new_value=change.new_value,
            details=change.details,
        )

"""Identifier Extractor

Walks the hyperlink elements of an open package, rebuilds the complete
address of each link (address + "#" + sub-address, the way Word's own
object model exposes it) and extracts the lookup identifier used for
metadata resolution.

The identifier regex and its case folding are a conformance contract with
the legacy macro: same pattern, same word boundaries, upper-cased result.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote
import logging
import re

from docx.document import Document as DocxDocument
from docx.oxml.ns import qn

from .models import ChangeLog, ChangeType, Hyperlink, HyperlinkAction
from .ooxml import hyperlink_text, iter_hyperlink_elements, relationship_id

logger = logging.getLogger(__name__)

LOOKUP_ID_PATTERN = re.compile(
    r"\b(TSRC-[^-]+-\d{6}|CMS-[^-]+-\d{6})\b",
    re.IGNORECASE,
)
DOCID_MARKER = "docid="
ESCAPED_HASH = "%23"


@dataclass
class LinkHandle:
    """Live view of one ``w:hyperlink`` element during a session.

    Only the element itself is kept. The relationship id is re-read from the
    element whenever it is needed, since retargets replace it.
    """

    element: object
    address: str
    sub_address: str
    display_text: str

    @property
    def url(self) -> str:
        return build_full_url(self.address, self.sub_address)

    @property
    def rel_id(self) -> Optional[str]:
        return relationship_id(self.element)

    @property
    def is_invisible(self) -> bool:
        return not self.display_text.strip() and bool(self.url)


def build_full_url(address: str, sub_address: str) -> str:
    """``address & IIf(Len(sub) > 0, "#" & sub, "")``"""
    address = address or ""
    if sub_address:
        return f"{address}#{sub_address}"
    return address


def split_target(
    target: Optional[str],
    anchor: Optional[str] = None,
    doc_location: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Split a relationship target into (address, sub_address).

    The sub-address is taken, in order, from a literal ``#`` fragment in the
    target, the element's ``w:anchor`` attribute, its ``w:docLocation``
    attribute, or an already-escaped ``%23`` inside the target. An escaped
    fragment is unescaped once so it is never double-encoded.
    """
    target = target or ""
    address, sep, fragment = target.partition("#")
    if sep and fragment:
        return address, fragment
    if sep:
        # Trailing "#" with nothing after it.
        target = address

    if anchor:
        return target, anchor
    if doc_location:
        return target, doc_location

    idx = target.lower().find(ESCAPED_HASH)
    if idx >= 0:
        return target[:idx], unquote(target[idx + len(ESCAPED_HASH):])

    return target, ""


def extract_docid_param(url: str) -> Optional[str]:
    """Value between ``docid=`` and the next ``&`` (URL-decoded, trimmed)."""
    if not url:
        return None
    idx = url.lower().find(DOCID_MARKER)
    if idx < 0:
        return None
    value = url[idx + len(DOCID_MARKER):]
    amp = value.find("&")
    if amp >= 0:
        value = value[:amp]
    value = unquote(value).strip()
    return value or None


def extract_lookup_id(url: str) -> Optional[str]:
    """
    Extract the lookup identifier from a complete URL.

    1. TSRC-/CMS- pattern (case-insensitive, word-bounded), upper-cased
    2. ``docid=`` parameter fallback
    3. otherwise None
    """
    if not url:
        return None
    match = LOOKUP_ID_PATTERN.search(url)
    if match:
        return match.group(1).upper()
    return extract_docid_param(url)


def read_link(document: DocxDocument, element) -> LinkHandle:
    part = document.part
    rid = relationship_id(element)
    target = None
    if rid:
        rel = part.rels.get(rid)
        if rel is not None:
            target = rel.target_ref
        else:
            logger.debug("Hyperlink references missing relationship %s", rid)
    address, sub = split_target(
        target,
        anchor=element.get(qn("w:anchor")),
        doc_location=element.get(qn("w:docLocation")),
    )
    return LinkHandle(
        element=element,
        address=address,
        sub_address=sub,
        display_text=hyperlink_text(element),
    )


def extract_links(document: DocxDocument) -> List[LinkHandle]:
    """Re-read every hyperlink of the document in order."""
    return [read_link(document, el) for el in iter_hyperlink_elements(document)]


def extract_hyperlinks(
    document: DocxDocument,
    change_log: Optional[ChangeLog] = None,
) -> Tuple[List[LinkHandle], List[Hyperlink]]:
    """
    First extraction of a session: build Hyperlink models with stable ids.

    Every link gets its lookup id cached here, including invisible links
    that the pruner is about to delete.
    """
    handles = extract_links(document)
    hyperlinks: List[Hyperlink] = []

    for idx, handle in enumerate(handles, start=1):
        url = handle.url
        lookup_id = extract_lookup_id(url)
        hyperlinks.append(
            Hyperlink(
                id=f"hl-{idx:04d}",
                original_url=url,
                display_text=handle.display_text,
                lookup_id=lookup_id,
            )
        )
        logger.debug(
            "Link hl-%04d: url=%s text=%r lookup_id=%s",
            idx,
            url,
            handle.display_text,
            lookup_id,
        )

    with_ids = sum(1 for h in hyperlinks if h.lookup_id)
    logger.info(
        "✓ Extracted %d hyperlinks (%d with lookup ids)", len(hyperlinks), with_ids
    )
    if change_log is not None and hyperlinks:
        change_log.add(
            ChangeType.INFORMATION,
            f"Extracted {len(hyperlinks)} hyperlinks",
            details=f"{with_ids} carry a lookup identifier",
        )
    return handles, hyperlinks


def bind_hyperlinks(
    handles: Iterable[LinkHandle],
    hyperlinks: Iterable[Hyperlink],
) -> List[Tuple[LinkHandle, Hyperlink]]:
    """
    Pair freshly extracted handles with existing models.

    Pairing uses the current absolute URL, taking models in order for
    repeated URLs. Links removed from the document (action REMOVED) are
    never bound.
    """
    pending: Dict[str, List[Hyperlink]] = {}
    for link in hyperlinks:
        if link.action_taken == HyperlinkAction.REMOVED:
            continue
        pending.setdefault(link.current_url, []).append(link)

    pairs: List[Tuple[LinkHandle, Hyperlink]] = []
    for handle in handles:
        candidates = pending.get(handle.url)
        if not candidates:
            logger.debug("No model for hyperlink %s; skipping", handle.url)
            continue
        pairs.append((handle, candidates.pop(0)))
    return pairs

"""Invisible Link Pruner

Removes hyperlinks whose rendered text is empty but whose address is not.
Must run after the extractor has cached every link's lookup id: invisible
links often carry the only occurrence of an identifier, and removing the
element must not lose it.
"""

from typing import Sequence
import logging

from docx.document import Document as DocxDocument

from .extractor import LinkHandle
from .models import ChangeLog, ChangeType, Hyperlink, HyperlinkAction
from .ooxml import drop_relationship_if_unused, remove_element

logger = logging.getLogger(__name__)


def prune_invisible_links(
    document: DocxDocument,
    handles: Sequence[LinkHandle],
    hyperlinks: Sequence[Hyperlink],
    change_log: ChangeLog,
) -> int:
    """
    Delete invisible hyperlinks and their relationships.

    ``handles`` and ``hyperlinks`` come from the same extraction and are
    index-aligned. Iteration runs backwards so earlier removals never shift
    later elements.

    Returns:
        Number of links removed
    """
    if len(handles) != len(hyperlinks):
        raise ValueError("handles and hyperlinks must come from the same extraction")

    part = document.part
    removed = 0

    for idx in range(len(handles) - 1, -1, -1):
        handle = handles[idx]
        link = hyperlinks[idx]
        if not handle.is_invisible:
            continue

        rid = handle.rel_id
        remove_element(handle.element)
        dropped = drop_relationship_if_unused(part, rid)
        if rid and not dropped:
            logger.debug(
                "Relationship %s kept or already gone after removing %s", rid, link.id
            )

        link.action_taken = HyperlinkAction.REMOVED
        link.requires_update = False
        change_log.add(
            ChangeType.HYPERLINK_REMOVED,
            "Deleted Invisible Hyperlink",
            element_id=link.id,
            old_value=handle.url,
            details="Hyperlink had empty display text",
        )
        removed += 1
        logger.debug(
            "Removed invisible hyperlink %s (%s), lookup_id=%s retained",
            link.id,
            handle.url,
            link.lookup_id,
        )

    if removed:
        logger.info("✓ Removed %d invisible hyperlinks", removed)
    return removed

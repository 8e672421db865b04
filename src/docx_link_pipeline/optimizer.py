"""Text optimization pass: whitespace, empty paragraphs and repeated breaks."""

from dataclasses import dataclass
import logging
import re

from docx.document import Document as DocxDocument
from docx.oxml.ns import qn

from .models import ChangeLog, ChangeType
from .ooxml import XML_SPACE

logger = logging.getLogger(__name__)

MULTIPLE_SPACES = re.compile(r" {2,}")
MAX_CONSECUTIVE_BREAKS = 2

# Anything below a paragraph that makes it meaningful even without text.
_CONTENT_TAGS = [
    qn("w:drawing"),
    qn("w:pict"),
    qn("w:object"),
    qn("w:hyperlink"),
    qn("w:fldSimple"),
    qn("w:fldChar"),
    qn("w:br"),
    qn("w:tab"),
    qn("w:sectPr"),
    qn("w:bookmarkStart"),
    qn("w:commentRangeStart"),
    qn("w:footnoteReference"),
    qn("w:endnoteReference"),
]


@dataclass
class OptimizationStats:
    spaces_normalized: int = 0
    empty_paragraphs_removed: int = 0
    breaks_removed: int = 0

    @property
    def total(self) -> int:
        return self.spaces_normalized + self.empty_paragraphs_removed + self.breaks_removed


class TextOptimizer:
    def optimize(self, document: DocxDocument, change_log: ChangeLog) -> OptimizationStats:
        body = document.element.body
        stats = OptimizationStats()
        stats.spaces_normalized = self._normalize_spaces(body)
        stats.breaks_removed = self._limit_breaks(body)
        stats.empty_paragraphs_removed = self._remove_empty_paragraphs(body)

        if stats.total:
            change_log.add(
                ChangeType.TEXT_OPTIMIZED,
                "Text optimization",
                details=(
                    f"{stats.spaces_normalized} spaces normalized, "
                    f"{stats.empty_paragraphs_removed} empty paragraphs removed, "
                    f"{stats.breaks_removed} breaks removed"
                ),
            )
            logger.info(
                "✓ Text optimized (spaces=%d, empty paragraphs=%d, breaks=%d)",
                stats.spaces_normalized,
                stats.empty_paragraphs_removed,
                stats.breaks_removed,
            )
        return stats

    def _normalize_spaces(self, body) -> int:
        count = 0
        for t in body.iter(qn("w:t")):
            if not t.text or "  " not in t.text:
                continue
            t.text = MULTIPLE_SPACES.sub(" ", t.text)
            if t.text != t.text.strip():
                t.set(XML_SPACE, "preserve")
            count += 1
        return count

    def _limit_breaks(self, body) -> int:
        removed = 0
        for run in body.iter(qn("w:r")):
            streak = 0
            for child in list(run):
                is_line_break = child.tag == qn("w:br") and child.get(qn("w:type")) in (
                    None,
                    "textWrapping",
                )
                if not is_line_break:
                    streak = 0
                    continue
                streak += 1
                if streak > MAX_CONSECUTIVE_BREAKS:
                    run.remove(child)
                    removed += 1
        return removed

    def _remove_empty_paragraphs(self, body) -> int:
        removed = 0
        for p in list(body.iter(qn("w:p"))):
            if any(True for _ in p.iter(*_CONTENT_TAGS)):
                continue
            if "".join(t.text or "" for t in p.iter(qn("w:t"))).strip():
                continue
            parent = p.getparent()
            if parent is None:
                continue
            # A table cell must keep at least one paragraph.
            if parent.tag == qn("w:tc") and len(parent.findall(qn("w:p"))) <= 1:
                continue
            parent.remove(p)
            removed += 1
        return removed

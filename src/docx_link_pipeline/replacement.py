"""Replacement Rules

Two rule-driven passes that run inside the document session:

  - HyperlinkRuleMatcher: binds hyperlinks whose display text matches a
    configured title to the lookup record of the rule's content id, so the
    Mutation Engine retargets them and replaces their title.
  - TextReplacer: whole-word, case-insensitive text replacement on plain
    paragraphs, preserving the first run's formatting.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import html
import logging
import re

from docx.document import Document as DocxDocument
from docx.oxml.ns import qn

from .config import HyperlinkReplacementRule, TextReplacementRule
from .extractor import LinkHandle
from .models import (
    ChangeLog,
    ChangeType,
    DocumentRecord,
    Hyperlink,
    HyperlinkAction,
    HyperlinkStatus,
)
from .ooxml import first_run_properties, make_run
from .resolver import ResolutionResult

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"<[^>]+>")
CONTENT_ID_SUFFIX_RE = re.compile(r"\s*\([0-9]{5,6}\)\s*$")
STATUS_SUFFIX_RE = re.compile(r"\s*-\s*(Expired|Not Found)\s*$", re.IGNORECASE)

# Run children that can be rebuilt as plain text without losing content.
_PLAIN_RUN_CHILDREN = {qn("w:rPr"), qn("w:t")}
_PLAIN_PARAGRAPH_CHILDREN = {qn("w:pPr"), qn("w:r"), qn("w:proofErr")}


def clean_display_text(text: str) -> str:
    """Strip HTML, quotes, status suffixes and the content-id suffix."""
    text = html.unescape(TAG_RE.sub("", text or ""))
    text = text.replace('"', "").replace("'", "")
    text = STATUS_SUFFIX_RE.sub("", text)
    text = CONTENT_ID_SUFFIX_RE.sub("", text)
    return text.strip()


class HyperlinkRuleMatcher:
    def __init__(self, rules: Iterable[HyperlinkReplacementRule]):
        self.rules = [
            r for r in rules if r.enabled and r.title_to_match.strip() and r.content_id.strip()
        ]

    def content_ids(self) -> List[str]:
        return [r.content_id.strip() for r in self.rules]

    def match(self, display_text: str) -> Optional[HyperlinkReplacementRule]:
        """First enabled rule whose title equals the cleaned display text."""
        cleaned = clean_display_text(display_text).lower()
        if not cleaned:
            return None
        for rule in self.rules:
            if clean_display_text(rule.title_to_match).lower() == cleaned:
                return rule
        return None

    def bind(
        self,
        pairs: Sequence[Tuple[LinkHandle, Hyperlink]],
        result: Optional[ResolutionResult],
        change_log: ChangeLog,
    ) -> Dict[str, DocumentRecord]:
        """
        Map link id -> record for every link matched by a rule.

        Matched links take the rule record's ids and title.
        """
        bound: Dict[str, DocumentRecord] = {}
        if not self.rules or result is None:
            return bound

        for handle, link in pairs:
            if link.action_taken == HyperlinkAction.REMOVED:
                continue
            rule = self.match(handle.display_text)
            if rule is None:
                continue
            record = result.get(rule.content_id)
            if record is None:
                logger.warning(
                    "Replacement rule '%s' content id %s not returned by lookup",
                    rule.title_to_match,
                    rule.content_id,
                )
                change_log.add(
                    ChangeType.WARNING,
                    "Replacement rule content ID not found",
                    element_id=link.id,
                    old_value=handle.display_text,
                    details=f"Rule '{rule.title_to_match}' -> {rule.content_id}",
                )
                continue

            link.content_id = record.content_id
            link.document_id = record.document_id
            link.title = record.title
            # The rule record replaces whatever the original id resolved to.
            link.status = (
                HyperlinkStatus.EXPIRED if record.is_expired else HyperlinkStatus.ACTIVE
            )
            bound[link.id] = record
            change_log.add(
                ChangeType.INFORMATION,
                "Matched hyperlink replacement rule",
                element_id=link.id,
                old_value=handle.display_text,
                details=f"Rule '{rule.title_to_match}' -> {rule.content_id}",
            )

        if bound:
            logger.info("✓ Bound %d hyperlinks to replacement rules", len(bound))
        return bound


def _preserve_case(matched: str, replacement: str) -> str:
    if matched.isupper():
        return replacement.upper()
    if matched[:1].isupper() and replacement:
        return replacement[0].upper() + replacement[1:]
    return replacement


def _is_plain_paragraph(p) -> bool:
    for child in p:
        if child.tag not in _PLAIN_PARAGRAPH_CHILDREN:
            return False
        if child.tag == qn("w:r") and any(c.tag not in _PLAIN_RUN_CHILDREN for c in child):
            return False
    return True


class TextReplacer:
    def __init__(
        self,
        rules: Iterable[TextReplacementRule],
        preserve_capitalization: bool = True,
    ):
        self.preserve_capitalization = preserve_capitalization
        self._compiled = [
            (
                re.compile(r"\b" + re.escape(rule.source_text) + r"\b", re.IGNORECASE),
                rule,
            )
            for rule in rules
            if rule.enabled and rule.source_text
        ]

    @property
    def has_rules(self) -> bool:
        return bool(self._compiled)

    def replace_text(self, text: str) -> Tuple[str, int]:
        """Apply every rule to ``text``; returns (new_text, rules_applied)."""
        applied = 0
        for pattern, rule in self._compiled:
            if self.preserve_capitalization:
                def repl(m, _r=rule.replacement_text):
                    return _preserve_case(m.group(0), _r)
            else:
                repl = rule.replacement_text.replace("\\", "\\\\")
            text, n = pattern.subn(repl, text)
            if n:
                applied += 1
        return text, applied

    def apply(self, document: DocxDocument, change_log: ChangeLog) -> int:
        """
        Replace text in plain paragraphs of the body.

        Paragraphs holding hyperlinks, fields, drawings or other structure are
        left alone. A changed paragraph is rebuilt as one run carrying the
        first run's properties.

        Returns:
            Number of paragraphs changed
        """
        if not self._compiled:
            return 0

        changed = 0
        skipped = 0
        for p in document.element.body.iter(qn("w:p")):
            runs = p.findall(qn("w:r"))
            if not runs:
                continue
            if not _is_plain_paragraph(p):
                skipped += 1
                continue

            old_text = "".join(t.text or "" for t in p.iter(qn("w:t")))
            new_text, applied = self.replace_text(old_text)
            if new_text == old_text:
                continue

            rpr = first_run_properties(p)
            index = p.index(runs[0])
            for r in runs:
                p.remove(r)
            p.insert(index, make_run(new_text, rpr))
            changed += 1
            change_log.add(
                ChangeType.TEXT_REPLACED,
                "Text replaced",
                old_value=old_text,
                new_value=new_text,
                details=f"Applied {applied} replacement rule(s)",
            )

        if skipped:
            logger.debug("Text replacement skipped %d structured paragraphs", skipped)
        if changed:
            logger.info("✓ Replaced text in %d paragraphs", changed)
        return changed

"""Changelog Reports

Renders a document's ChangeLog as a plain-text report (one section per
change type, one or two lines per entry) and writes batch-level outputs:
the combined changelog and the run metadata JSON.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List
import json
import logging

from .models import ChangeEntry, ChangeType, Document

logger = logging.getLogger(__name__)

SECTION_TITLES = {
    ChangeType.HYPERLINK_UPDATED: "Updated Hyperlinks",
    ChangeType.HYPERLINK_REMOVED: "Removed Hyperlinks",
    ChangeType.HYPERLINK_STATUS_ADDED: "Status Suffixes Added",
    ChangeType.CONTENT_ID_ADDED: "Content IDs Added",
    ChangeType.TITLE_REPLACED: "Titles Replaced",
    ChangeType.POSSIBLE_TITLE_CHANGE: "Possible Title Changes",
    ChangeType.TEXT_REPLACED: "Text Replacements",
    ChangeType.TEXT_OPTIMIZED: "Text Optimization",
    ChangeType.WARNING: "Warnings",
    ChangeType.ERROR: "Errors",
    ChangeType.INFORMATION: "Information",
}


def _entry_lines(entry: ChangeEntry) -> List[str]:
    head = f"  - {entry.description}"
    if entry.element_id:
        head += f" [{entry.element_id}]"
    if entry.old_value is not None or entry.new_value is not None:
        head += f": {entry.old_value or ''!r} -> {entry.new_value or ''!r}"
    lines = [head]
    if entry.details:
        lines.append(f"      {entry.details}")
    return lines


def render_changelog(document: Document) -> str:
    """Plain-text changelog for one document."""
    lines = [
        f"Document: {document.file_name}",
        f"Path:     {document.file_path}",
        f"Status:   {document.status.value}",
    ]
    if document.processed_at:
        lines.append(f"Processed: {document.processed_at.isoformat(timespec='seconds')}")
    if document.backup_path:
        lines.append(f"Backup:   {document.backup_path}")
    if document.error_message:
        lines.append(f"Error:    {document.error_message}")
    lines.append(f"Summary:  {document.change_log.summary}")

    by_type: Dict[ChangeType, List[ChangeEntry]] = {}
    for entry in document.change_log.changes:
        by_type.setdefault(entry.type, []).append(entry)

    for change_type, title in SECTION_TITLES.items():
        entries = by_type.get(change_type)
        if not entries:
            continue
        lines.append("")
        lines.append(f"{title} ({len(entries)})")
        for entry in entries:
            lines.extend(_entry_lines(entry))

    return "\n".join(lines) + "\n"


def write_batch_report(
    documents: Iterable[Document],
    output_dir: Path | str,
    run_timestamp: str,
    keep_history: bool = True,
) -> Path:
    """Write every document's changelog into one text file."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    filename = f"changelog_{run_timestamp}.txt" if keep_history else "changelog.txt"
    report_path = output_dir / filename

    separator = "=" * 70
    sections = [
        f"Hyperlink processing report - {datetime.now().isoformat(timespec='seconds')}",
    ]
    for document in documents:
        sections.append(separator)
        sections.append(render_changelog(document))

    report_path.write_text("\n".join(sections), encoding="utf-8")
    logger.info("✓ Saved: %s", report_path.name)
    return report_path


def save_run_metadata(
    output_dir: Path | str,
    run_timestamp: str,
    keep_history: bool,
    metadata: Dict[str, Any],
) -> Path:
    """Save pipeline run metadata."""
    output_dir = Path(output_dir)
    meta_filename = f"run_metadata_{run_timestamp}.json" if keep_history else "run_metadata.json"
    meta_path = output_dir / meta_filename
    metadata["timestamp"] = run_timestamp

    with meta_path.open("w", encoding="utf-8") as f:
        json.dump(metadata, f, ensure_ascii=False, indent=2, default=str)
    logger.info("✓ Saved: %s", meta_filename)
    return meta_path

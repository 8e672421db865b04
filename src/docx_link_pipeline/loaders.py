"""Input Loader Module

Resolves the documents a batch should process and loads replacement-rule
files.

Rule files are JSON and may use any of these layouts:
  - {"hyperlink_rules": [...], "text_rules": [...]}
  - {"replacement": {"hyperlink_rules": [...], "text_rules": [...]}}
  - a flat list of hyperlink rules: [{"title_to_match": ..., "content_id": ...}]
"""

import json
from pathlib import Path
from typing import Iterable, List

from .config import ReplacementSettings


def discover_documents(
    inputs: Iterable[Path | str],
    extensions: Iterable[str],
    skip_dir: str = "Backups",
) -> List[Path]:
    """Expand files and directories into a de-duplicated list of documents.

    Directories are searched recursively. Office lock files (``~$name.docx``)
    and files under ``skip_dir`` directories are skipped.

    Args:
        inputs: Files and/or directories
        extensions: Accepted suffixes, e.g. [".docx", ".docm"]

    Returns:
        Sorted-within-directory list of document paths, in input order

    Raises:
        FileNotFoundError: If an input path does not exist
    """
    wanted = {e.lower() for e in extensions}
    seen = set()
    found: List[Path] = []

    def _add(p: Path) -> None:
        key = p.resolve()
        if key in seen:
            return
        seen.add(key)
        found.append(p)

    for item in inputs:
        path = Path(item)
        if not path.exists():
            raise FileNotFoundError(f"Input not found: {path}")
        if path.is_file():
            _add(path)
            continue
        for candidate in sorted(path.rglob("*")):
            if not candidate.is_file() or candidate.suffix.lower() not in wanted:
                continue
            if candidate.name.startswith("~$"):
                continue
            if any(part.lower() == skip_dir.lower() for part in candidate.relative_to(path).parts[:-1]):
                continue
            _add(candidate)
    return found


def load_replacement_rules(path: str | Path) -> ReplacementSettings:
    """Load hyperlink and text replacement rules from a JSON file.

    Raises:
        FileNotFoundError: If file does not exist
        json.JSONDecodeError: If file is not valid JSON
        pydantic.ValidationError: If a rule is malformed
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        return ReplacementSettings(hyperlink_rules=data)
    # fall back if wrapped
    return ReplacementSettings.model_validate(data.get("replacement") or data)

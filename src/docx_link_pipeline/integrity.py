"""Integrity Guard

Validates the package before and after every mutating stage of a session,
and once more after saving using a freshly reopened handle.

Checks performed on the main document part:
  - every ``r:`` attribute (r:id, r:embed, r:link, ...) resolves to a relationship
  - hyperlink elements point at hyperlink relationships with a target
  - ``w:tblLook`` carries only declared attributes
  - ``w:id`` values on bookmarks, comments and revisions are integers
  - optional XSD validation when a schema file is configured

After save, the zip container and every XML part are also checked for
well-formedness with lxml.

Findings are filtered through two allowlists (exact message and message
prefix). Whatever remains is fatal for the current checkpoint.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional
import logging
import zipfile

import lxml.etree
from docx.document import Document as DocxDocument
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml.ns import qn

from .config import IntegritySettings
from .errors import IntegrityError
from .ooxml import R_NAMESPACE, open_document

logger = logging.getLogger(__name__)

W_NAMESPACE = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

# Attributes allowed on w:tblLook by the original schema revision.
_TBL_LOOK_DECLARED = {"val"}

_NUMERIC_ID_ELEMENTS = [
    qn("w:bookmarkStart"),
    qn("w:bookmarkEnd"),
    qn("w:commentRangeStart"),
    qn("w:commentRangeEnd"),
    qn("w:commentReference"),
    qn("w:ins"),
    qn("w:del"),
]


@dataclass(frozen=True)
class ValidationIssue:
    message: str
    part: str = "/word/document.xml"
    line: Optional[int] = None

    def __str__(self) -> str:
        where = f"{self.part}:{self.line}" if self.line else self.part
        return f"{where}: {self.message}"


class IntegrityGuard:
    """Package validator with ignorable-error allowlists."""

    def __init__(self, settings: Optional[IntegritySettings] = None):
        self.settings = settings or IntegritySettings()
        self._exact = set(self.settings.exact_allowlist)
        self._prefixes = tuple(self.settings.prefix_allowlist)
        self._schema = None
        if self.settings.schema_path is not None:
            schema_path = Path(self.settings.schema_path)
            if not schema_path.exists():
                raise ValueError(f"Schema file not found: {schema_path}")
            self._schema = lxml.etree.XMLSchema(lxml.etree.parse(str(schema_path)))
            logger.info("Loaded XSD schema from %s", schema_path)

    # ------------------------------------------------------------------
    # Allowlist
    # ------------------------------------------------------------------

    def is_ignorable(self, message: str) -> bool:
        if message in self._exact:
            return True
        return bool(self._prefixes) and message.startswith(self._prefixes)

    def filter_issues(self, issues: Iterable[ValidationIssue]) -> List[ValidationIssue]:
        return [i for i in issues if not self.is_ignorable(i.message)]

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def collect_issues(self, document: DocxDocument) -> List[ValidationIssue]:
        part = document.part
        root = part.element
        issues: List[ValidationIssue] = []
        issues.extend(self._check_relationship_references(part))
        issues.extend(self._check_hyperlinks(part))
        issues.extend(self._check_table_look(root))
        issues.extend(self._check_numeric_ids(root))
        if self._schema is not None:
            issues.extend(self._check_schema(root))
        return issues

    def _check_relationship_references(self, part) -> List[ValidationIssue]:
        prefix = "{%s}" % R_NAMESPACE
        issues = []
        for el in part.element.iter():
            for name, value in el.attrib.items():
                if not name.startswith(prefix):
                    continue
                if value not in part.rels:
                    local = name[len(prefix):]
                    issues.append(
                        ValidationIssue(
                            f"The relationship '{value}' referenced by attribute "
                            f"'r:{local}' does not exist.",
                            line=el.sourceline,
                        )
                    )
        return issues

    def _check_hyperlinks(self, part) -> List[ValidationIssue]:
        issues = []
        for el in part.element.iter(qn("w:hyperlink")):
            rid = el.get(qn("r:id"))
            if not rid or rid not in part.rels:
                continue
            rel = part.rels[rid]
            if rel.reltype != RT.HYPERLINK:
                issues.append(
                    ValidationIssue(
                        f"Hyperlink element references relationship '{rid}' "
                        f"of type '{rel.reltype}'.",
                        line=el.sourceline,
                    )
                )
            elif rel.is_external and not (rel.target_ref or "").strip():
                issues.append(
                    ValidationIssue(
                        f"Hyperlink relationship '{rid}' has an empty target.",
                        part="/word/_rels/document.xml.rels",
                    )
                )
        return issues

    def _check_table_look(self, root) -> List[ValidationIssue]:
        prefix = "{%s}" % W_NAMESPACE
        issues = []
        for el in root.iter(qn("w:tblLook")):
            for name in el.attrib:
                if not name.startswith(prefix):
                    continue
                local = name[len(prefix):]
                if local not in _TBL_LOOK_DECLARED:
                    issues.append(
                        ValidationIssue(
                            f"The attribute 'w:{local}' is not declared.",
                            line=el.sourceline,
                        )
                    )
        return issues

    def _check_numeric_ids(self, root) -> List[ValidationIssue]:
        issues = []
        for el in root.iter(*_NUMERIC_ID_ELEMENTS):
            value = el.get(qn("w:id"))
            if value is None:
                continue
            try:
                int(value)
            except ValueError:
                issues.append(
                    ValidationIssue(
                        f"The attribute 'w:id' has invalid value '{value}'.",
                        line=el.sourceline,
                    )
                )
        return issues

    def _check_schema(self, root) -> List[ValidationIssue]:
        if self._schema.validate(root):
            return []
        return [
            ValidationIssue(e.message, line=e.line)
            for e in self._schema.error_log
        ]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def check(self, document: DocxDocument, checkpoint: str) -> List[ValidationIssue]:
        """
        Run every check and fail on anything outside the allowlists.

        Returns:
            The ignored issues, for diagnostics

        Raises:
            IntegrityError: If any non-ignorable issue remains
        """
        issues = self.collect_issues(document)
        remaining = self.filter_issues(issues)
        ignored = [i for i in issues if i not in remaining]
        if ignored:
            logger.debug(
                "Checkpoint '%s': ignoring %d allowlisted issue(s)", checkpoint, len(ignored)
            )
        if remaining:
            for issue in remaining:
                logger.error("Checkpoint '%s': %s", checkpoint, issue)
            raise IntegrityError(checkpoint, [str(i) for i in remaining])
        logger.debug("Checkpoint '%s' passed", checkpoint)
        return ignored

    def check_container(self, path: Path | str) -> List[ValidationIssue]:
        """Zip integrity and XML well-formedness of every part."""
        path = Path(path)
        issues: List[ValidationIssue] = []
        try:
            with zipfile.ZipFile(path) as zf:
                bad = zf.testzip()
                if bad is not None:
                    issues.append(ValidationIssue(f"Corrupt zip member '{bad}'.", part=bad))
                names = zf.namelist()
                if "[Content_Types].xml" not in names:
                    issues.append(
                        ValidationIssue("Package has no [Content_Types].xml.", part="/")
                    )
                for name in names:
                    if not name.endswith((".xml", ".rels")):
                        continue
                    try:
                        lxml.etree.fromstring(zf.read(name))
                    except lxml.etree.XMLSyntaxError as e:
                        issues.append(
                            ValidationIssue(
                                f"Part is not well-formed XML: {e}", part=f"/{name}"
                            )
                        )
        except zipfile.BadZipFile as e:
            issues.append(ValidationIssue(f"Not a zip package: {e}", part="/"))
        return issues

    def verify_file(self, path: Path | str, checkpoint: str = "after save") -> None:
        """
        Validate a saved package through a fresh read-only handle.

        The write handle must already be released by the caller.

        Raises:
            IntegrityError: If the container or the reopened document fails
        """
        remaining = self.filter_issues(self.check_container(path))
        if remaining:
            raise IntegrityError(checkpoint, [str(i) for i in remaining])
        reopened = open_document(path)
        self.check(reopened, checkpoint)
        logger.debug("✓ Verified %s", Path(path).name)

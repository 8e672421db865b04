"""Package helpers built on python-docx.

Thin wrappers for the few places where the pipeline works below the
python-docx object model: opening macro-enabled packages, reading and
rewriting hyperlink elements, and managing hyperlink relationships on the
main document part.
"""

from copy import deepcopy
from pathlib import Path
from typing import Dict, Iterator, Optional
import logging
import os
import uuid

from docx.document import Document as DocxDocument
from docx.opc.constants import CONTENT_TYPE as CT
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.part import PartFactory
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.package import Package
from docx.parts.document import DocumentPart

logger = logging.getLogger(__name__)

DOCM_MAIN_CONTENT_TYPE = "application/vnd.ms-word.document.macroEnabled.main+xml"
WORD_MAIN_CONTENT_TYPES = {CT.WML_DOCUMENT_MAIN, DOCM_MAIN_CONTENT_TYPE}

R_NAMESPACE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

# python-docx only maps the plain .docx main part; register the macro-enabled
# variant so .docm packages load as a DocumentPart and keep their content type.
PartFactory.part_type_for.setdefault(DOCM_MAIN_CONTENT_TYPE, DocumentPart)


def open_document(path: Path | str) -> DocxDocument:
    """Open a .docx or .docm package for editing."""
    path = Path(path)
    document_part = Package.open(str(path)).main_document_part
    if document_part.content_type not in WORD_MAIN_CONTENT_TYPES:
        raise ValueError(
            f"file '{path}' is not a Word file, content type is "
            f"'{document_part.content_type}'"
        )
    return document_part.document


def save_atomically(document: DocxDocument, path: Path | str) -> None:
    """Save to a sibling temp file, then atomically replace ``path``."""
    path = Path(path)
    tmp_path = path.with_name(f".{path.stem}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        document.save(str(tmp_path))
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def iter_hyperlink_elements(document: DocxDocument) -> Iterator:
    """Yield every ``w:hyperlink`` element of the body in document order."""
    yield from document.element.body.iter(qn("w:hyperlink"))


def hyperlink_text(element) -> str:
    return "".join(t.text or "" for t in element.iter(qn("w:t")))


def make_text_element(text: str):
    t = OxmlElement("w:t")
    t.text = text
    if text != text.strip():
        t.set(XML_SPACE, "preserve")
    return t


def make_run(text: str, rpr=None):
    run = OxmlElement("w:r")
    if rpr is not None:
        run.append(deepcopy(rpr))
    run.append(make_text_element(text))
    return run


def first_run_properties(element):
    """Return the ``w:rPr`` of the first run under ``element``, if any."""
    run = element.find(qn("w:r"))
    if run is None:
        run = next(element.iter(qn("w:r")), None)
    if run is None:
        return None
    return run.find(qn("w:rPr"))


def set_hyperlink_text(element, text: str) -> None:
    """
    Replace the content of a hyperlink with a single run.

    Formatting of the first existing run is cloned onto the new run. The
    element's own attributes (r:id, anchor, tooltip, history) are untouched.
    """
    rpr = first_run_properties(element)
    rpr = deepcopy(rpr) if rpr is not None else None
    for child in list(element):
        element.remove(child)
    element.append(make_run(text, rpr))


def relationship_id(element) -> Optional[str]:
    return element.get(qn("r:id"))


def relationship_map(part) -> Dict[str, str]:
    return {rid: rel.target_ref for rid, rel in part.rels.items()}


def count_relationship_references(part, rid: str) -> int:
    """Count attributes in the ``r:`` namespace pointing at ``rid``."""
    prefix = "{%s}" % R_NAMESPACE
    count = 0
    for el in part.element.iter():
        for name, value in el.attrib.items():
            if value == rid and name.startswith(prefix):
                count += 1
    return count


def add_hyperlink_relationship(part, target: str) -> tuple[str, bool]:
    """
    Get or add an external hyperlink relationship for ``target``.

    Returns:
        (rId, created) where ``created`` is False when an existing
        relationship with the same target was reused
    """
    existing = {
        rid
        for rid, rel in part.rels.items()
        if rel.reltype == RT.HYPERLINK and rel.is_external and rel.target_ref == target
    }
    rid = part.relate_to(target, RT.HYPERLINK, is_external=True)
    return rid, rid not in existing


def drop_relationship_if_unused(part, rid: Optional[str]) -> bool:
    """
    Delete relationship ``rid`` when no element references it any more.

    A relationship that is already gone is not an error.
    """
    if not rid or rid not in part.rels:
        return False
    if count_relationship_references(part, rid) > 0:
        return False
    part.rels.pop(rid, None)
    return True


def remove_element(element) -> None:
    parent = element.getparent()
    if parent is not None:
        parent.remove(element)

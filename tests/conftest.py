import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from docx import Document as NewDocument
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml import OxmlElement
from docx.oxml.ns import qn

from src.docx_link_pipeline.config import ApiSettings, AppSettings
from src.docx_link_pipeline.resolver import MetadataResolver

TARGET_BASE = "https://docs.example.com/nuxeo/thesource/"


def add_hyperlink(
    paragraph,
    url: Optional[str],
    text: str,
    anchor: Optional[str] = None,
    bold: bool = False,
):
    """Append a w:hyperlink to a python-docx paragraph and return the element."""
    el = OxmlElement("w:hyperlink")
    if url is not None:
        rid = paragraph.part.relate_to(url, RT.HYPERLINK, is_external=True)
        el.set(qn("r:id"), rid)
    if anchor:
        el.set(qn("w:anchor"), anchor)
    if text:
        run = OxmlElement("w:r")
        rpr = OxmlElement("w:rPr")
        style = OxmlElement("w:rStyle")
        style.set(qn("w:val"), "Hyperlink")
        rpr.append(style)
        if bold:
            rpr.append(OxmlElement("w:b"))
        run.append(rpr)
        t = OxmlElement("w:t")
        t.text = text
        if text != text.strip():
            t.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
        run.append(t)
        el.append(run)
    paragraph._p.append(el)
    return el


def build_document(links: List[Any], paragraphs: Optional[List[str]] = None):
    """
    In-memory python-docx Document.

    ``links`` items are (url, text) tuples or dicts with add_hyperlink kwargs;
    each link goes into its own paragraph after the plain ``paragraphs``.
    """
    doc = NewDocument()
    for text in paragraphs or []:
        doc.add_paragraph(text)
    for item in links:
        kwargs = item if isinstance(item, dict) else {"url": item[0], "text": item[1]}
        p = doc.add_paragraph("See ")
        add_hyperlink(p, **kwargs)
    return doc


@pytest.fixture
def make_docx(tmp_path: Path):
    """Factory writing a .docx with the given links into tmp_path."""

    def _make(
        name: str = "sample.docx",
        links: Optional[List[Any]] = None,
        paragraphs: Optional[List[str]] = None,
        directory: Optional[Path] = None,
    ) -> Path:
        doc = build_document(links or [], paragraphs)
        target_dir = directory or tmp_path
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        doc.save(str(path))
        return path

    return _make


def rewrite_zip_entry(path: Path, entry: str, transform) -> None:
    """Rewrite one member of a zip package in place."""
    with zipfile.ZipFile(path) as zf:
        items = [(info, zf.read(info.filename)) for info in zf.infolist()]
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for info, data in items:
            if info.filename == entry:
                data = transform(data)
            zf.writestr(info, data)


class RecordingResolver(MetadataResolver):
    """
    Resolver returning canned records and recording the requested ids.
    """

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        super().__init__(ApiSettings(base_url="http://lookup.invalid/api"))
        self.records = list(records or [])
        self.calls: List[List[str]] = []

    def fetch(self, ids, token=None):
        self.calls.append(list(ids))
        return {"Version": "1.0", "Changes": "", "Results": self.records}


@pytest.fixture
def settings() -> AppSettings:
    s = AppSettings()
    s.api.target_base_address = TARGET_BASE
    return s


@pytest.fixture
def new_document():
    """Factory for in-memory documents (see ``build_document``)."""
    return build_document


@pytest.fixture
def recording_resolver():
    """Factory: ``recording_resolver(records)`` -> RecordingResolver."""
    return RecordingResolver


@pytest.fixture
def rewrite_zip():
    return rewrite_zip_entry


@pytest.fixture
def hyperlink_adder():
    return add_hyperlink

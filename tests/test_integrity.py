# tests/test_integrity.py

from pathlib import Path

import pytest
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml import OxmlElement
from docx.oxml.ns import qn

from src.docx_link_pipeline.config import IntegritySettings
from src.docx_link_pipeline.errors import IntegrityError
from src.docx_link_pipeline.integrity import W_NAMESPACE, IntegrityGuard

PERMISSIVE_XSD = f"""<?xml version="1.0"?>
<xs:schema xmlns:xs="http://www.w3.org/2001/XMLSchema"
           targetNamespace="{W_NAMESPACE}" elementFormDefault="qualified">
  <xs:element name="document">
    <xs:complexType>
      <xs:sequence>
        <xs:any processContents="skip" minOccurs="0" maxOccurs="unbounded"/>
      </xs:sequence>
      <xs:anyAttribute processContents="skip"/>
    </xs:complexType>
  </xs:element>
</xs:schema>
"""

WRONG_ROOT_XSD = f"""<?xml version="1.0"?>
<xs:schema xmlns:xs="http://www.w3.org/2001/XMLSchema"
           targetNamespace="{W_NAMESPACE}" elementFormDefault="qualified">
  <xs:element name="other" type="xs:string"/>
</xs:schema>
"""


def _table_look(doc, **attrs):
    tbl = doc.add_table(rows=1, cols=1)._tbl
    look = tbl.tblPr.find(qn("w:tblLook"))
    if look is None:
        look = OxmlElement("w:tblLook")
        tbl.tblPr.append(look)
    for name, value in attrs.items():
        look.set(qn(f"w:{name}"), value)
    return look


def _bookmark(doc, bookmark_id):
    start = OxmlElement("w:bookmarkStart")
    start.set(qn("w:id"), bookmark_id)
    start.set(qn("w:name"), "mark")
    doc.add_paragraph("Marked")._p.append(start)


def test_fresh_document_passes(new_document):
    guard = IntegrityGuard()
    assert guard.check(new_document([("https://x/a", "A")]), "after open") == []


@pytest.mark.parametrize(
    "message, expected",
    [
        ("The attribute 'w:firstRow' is not declared.", True),
        ("The attribute 'w:noVBand' is not declared.", True),
        ("The attribute 'w:firstRow' is not declared", False),
        ("The attribute 'w:id' has invalid value 'abc'.", True),
        ("The attribute 'w:foo' is not declared.", False),
    ],
)
def test_allowlist_exact_and_prefix(message, expected):
    assert IntegrityGuard().is_ignorable(message) is expected


def test_table_look_attributes_are_ignored(new_document):
    doc = new_document([])
    _table_look(doc, firstRow="1", noVBand="1")
    guard = IntegrityGuard()

    ignored = guard.check(doc, "after open")

    messages = [i.message for i in ignored]
    assert "The attribute 'w:firstRow' is not declared." in messages
    assert "The attribute 'w:noVBand' is not declared." in messages


def test_undeclared_attribute_outside_allowlist_is_fatal(new_document):
    doc = new_document([])
    _table_look(doc, foo="1")

    with pytest.raises(IntegrityError) as exc_info:
        IntegrityGuard().check(doc, "after mutation")

    assert exc_info.value.checkpoint == "after mutation"
    assert any("w:foo" in issue for issue in exc_info.value.issues)


def test_non_numeric_bookmark_id_is_allowlisted_by_prefix(new_document):
    doc = new_document([])
    _bookmark(doc, "abc")

    IntegrityGuard().check(doc, "after open")

    strict = IntegrityGuard(IntegritySettings(prefix_allowlist=[]))
    with pytest.raises(IntegrityError):
        strict.check(doc, "after open")


def test_missing_relationship_is_fatal(new_document):
    doc = new_document([("https://x/a", "A")])
    doc.element.body.find(".//" + qn("w:hyperlink")).set(qn("r:id"), "rId999")

    with pytest.raises(IntegrityError) as exc_info:
        IntegrityGuard().check(doc, "after pruning")

    assert (
        "The relationship 'rId999' referenced by attribute 'r:id' does not exist."
        in exc_info.value.issues[0]
    )


def test_hyperlink_pointing_at_wrong_relationship_type_is_fatal(new_document):
    doc = new_document([("https://x/a", "A")])
    styles_rid = next(rid for rid, rel in doc.part.rels.items() if rel.reltype == RT.STYLES)
    doc.element.body.find(".//" + qn("w:hyperlink")).set(qn("r:id"), styles_rid)

    with pytest.raises(IntegrityError):
        IntegrityGuard().check(doc, "after mutation")


def test_verify_file_accepts_saved_document(make_docx):
    path = make_docx("ok.docx", links=[("https://x/a", "A")])
    IntegrityGuard().verify_file(path)


def test_verify_file_rejects_non_zip(tmp_path: Path):
    path = tmp_path / "broken.docx"
    path.write_bytes(b"this is not a zip package")

    with pytest.raises(IntegrityError) as exc_info:
        IntegrityGuard().verify_file(path)
    assert exc_info.value.checkpoint == "after save"


def test_verify_file_rejects_malformed_part(make_docx, rewrite_zip):
    path = make_docx("malformed.docx", links=[("https://x/a", "A")])
    rewrite_zip(path, "word/document.xml", lambda data: data[: len(data) // 2])

    issues = IntegrityGuard().check_container(path)
    assert any("not well-formed" in i.message for i in issues)
    with pytest.raises(IntegrityError):
        IntegrityGuard().verify_file(path)


def test_optional_schema_validation(tmp_path: Path, new_document):
    doc = new_document([("https://x/a", "A")])
    permissive = tmp_path / "permissive.xsd"
    permissive.write_text(PERMISSIVE_XSD, encoding="utf-8")
    wrong = tmp_path / "wrong.xsd"
    wrong.write_text(WRONG_ROOT_XSD, encoding="utf-8")

    IntegrityGuard(IntegritySettings(schema_path=permissive)).check(doc, "after open")
    with pytest.raises(IntegrityError):
        IntegrityGuard(IntegritySettings(schema_path=wrong)).check(doc, "after open")


def test_missing_schema_file_is_rejected(tmp_path: Path):
    with pytest.raises(ValueError):
        IntegrityGuard(IntegritySettings(schema_path=tmp_path / "absent.xsd"))

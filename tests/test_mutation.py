# tests/test_mutation.py

import pytest
from docx.oxml.ns import qn

import src.docx_link_pipeline.mutation as mutation
from src.docx_link_pipeline.errors import RelationshipError
from src.docx_link_pipeline.extractor import bind_hyperlinks, extract_hyperlinks, extract_links
from src.docx_link_pipeline.models import (
    ChangeLog,
    ChangeType,
    DocumentRecord,
    HyperlinkAction,
    HyperlinkStatus,
    LookupResponse,
)
from src.docx_link_pipeline.mutation import (
    LinkEditState,
    MutationEngine,
    MutationOptions,
    compose_target_url,
    content_id_suffix,
    persist_link_edit,
    plan_link_edit,
)
from src.docx_link_pipeline.resolver import ResolutionResult, apply_resolution, build_lookup

BASE = "https://docs.example.com/nuxeo/thesource/"
OLD_URL = "https://old.example.com/view?docid=CMS-POL-654321"
NEW_URL = BASE + "#!/view?docid=DOC99"
RECORD = DocumentRecord(
    document_id="DOC99", content_id="CMS-POL-654321", title="Policy X", status="Released"
)


def _resolution(records):
    return ResolutionResult(response=LookupResponse(results=records), lookup=build_lookup(records))


def _single(new_document, text, url=OLD_URL, status=HyperlinkStatus.ACTIVE, **kwargs):
    doc = new_document([{"url": url, "text": text, **kwargs}])
    handles, links = extract_hyperlinks(doc)
    links[0].status = status
    return doc, handles[0], links[0]


@pytest.mark.parametrize(
    "content_id, expected",
    [
        ("TSRC-ABC-654321", ("654321", "54321")),
        ("654321", ("654321", "54321")),
        ("12", ("000012", "000012")),
        (" 123 ", ("000123", "000123")),
        ("AB", ("AB", "AB")),
    ],
)
def test_content_id_suffix(content_id, expected):
    assert content_id_suffix(content_id) == expected


def test_compose_target_url():
    assert compose_target_url(BASE, "DOC99") == NEW_URL


def test_plan_appends_content_id_and_retargets(new_document):
    doc, handle, link = _single(new_document, "Policy X")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.new_url == NEW_URL
    assert edit.new_text == "Policy X (654321)"
    assert edit.state == LinkEditState.URL_AND_TEXT_CHANGED
    assert [c.type for c in edit.changes] == [
        ChangeType.HYPERLINK_UPDATED,
        ChangeType.CONTENT_ID_ADDED,
    ]
    assert edit.changes[1].description == "Content ID appended"


def test_plan_upgrades_five_digit_suffix(new_document):
    doc, handle, link = _single(new_document, "Policy X (54321)")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.new_text == "Policy X (654321)"
    assert edit.changes[1].description == "Upgraded 5-digit content ID to 6-digit"


def test_plan_appends_when_five_digit_suffix_belongs_to_another_id(new_document):
    """
    A 5-digit suffix that is not the last five digits of this content id is
    left in place and the 6-digit suffix is appended after it.
    """
    doc, handle, link = _single(new_document, "Policy X (00042)")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.new_text == "Policy X (00042) (654321)"
    possible = [c for c in edit.changes if c.type == ChangeType.POSSIBLE_TITLE_CHANGE]
    assert len(possible) == 1
    assert possible[0].old_value == "Policy X (00042)"
    assert possible[0].new_value == "Policy X"


def test_plan_skips_content_id_when_disabled(new_document):
    doc, handle, link = _single(new_document, "Policy X")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE, add_content_ids=False))

    assert edit.new_text == "Policy X"
    assert edit.state == LinkEditState.URL_CHANGED


def test_plan_expired_appends_status_after_content_id(new_document):
    expired = RECORD.model_copy(update={"status": "Expired"})
    doc, handle, link = _single(new_document, "Policy X", status=HyperlinkStatus.EXPIRED)

    edit = plan_link_edit(link, handle, expired, MutationOptions(BASE))

    assert edit.new_text == "Policy X (654321) - Expired"
    assert edit.changes[-1].type == ChangeType.HYPERLINK_STATUS_ADDED


def test_plan_not_found_appends_suffix_without_retarget(new_document):
    doc, handle, link = _single(new_document, "Policy X", status=HyperlinkStatus.NOT_FOUND)

    edit = plan_link_edit(link, handle, None, MutationOptions(BASE))

    assert edit.new_text == "Policy X - Not Found"
    assert edit.new_url == OLD_URL
    assert edit.state == LinkEditState.TEXT_CHANGED


def test_plan_existing_status_suffix_blocks_content_id_but_not_retarget(new_document):
    doc, handle, link = _single(new_document, "Policy X - Not Found")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.new_text == "Policy X - Not Found"
    assert edit.state == LinkEditState.URL_CHANGED


def test_plan_local_file_link_is_retargeted(new_document):
    doc, handle, link = _single(
        new_document, "Policy X (654321)", url="file:///C:/docs/CMS-POL-654321.docx"
    )

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.retarget
    assert edit.new_url == NEW_URL
    assert edit.changes[0].details == "local file link"


def test_plan_keeps_url_already_pointing_at_content_id_without_document_id(new_document):
    record = DocumentRecord(content_id="CMS-POL-654321", title="Policy X")
    url = compose_target_url(BASE, "CMS-POL-654321")
    doc, handle, link = _single(new_document, "Policy X (654321)", url=url)

    edit = plan_link_edit(link, handle, record, MutationOptions(BASE))

    assert not edit.requires_update
    assert edit.state == LinkEditState.UNCHANGED
    assert edit.changes == []


def test_plan_auto_replace_titles(new_document):
    doc, handle, link = _single(new_document, "Old Title (654321)")

    edit = plan_link_edit(
        link, handle, RECORD, MutationOptions(BASE, auto_replace_titles=True)
    )

    assert edit.new_text == "Policy X (654321)"
    replaced = [c for c in edit.changes if c.type == ChangeType.TITLE_REPLACED]
    assert replaced[0].old_value == "Old Title (654321)"


def test_plan_reports_title_difference_without_changing_text(new_document):
    doc, handle, link = _single(new_document, "Old Title (654321)")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    assert edit.new_text == "Old Title (654321)"
    assert edit.state == LinkEditState.URL_CHANGED
    assert [c.type for c in edit.changes][-1] == ChangeType.POSSIBLE_TITLE_CHANGE

    quiet = plan_link_edit(
        link, handle, RECORD, MutationOptions(BASE, report_title_differences=False)
    )
    assert ChangeType.POSSIBLE_TITLE_CHANGE not in [c.type for c in quiet.changes]


def test_plan_forced_title_replaces_without_auto_option(new_document):
    doc, handle, link = _single(new_document, "Old Title")

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE), force_title=True)

    assert edit.new_text == "Policy X (654321)"


def test_engine_apply_is_idempotent(new_document):
    """
    Running the engine twice over the same document changes nothing the
    second time: no new entries, no new edits.
    """
    doc = new_document([(OLD_URL, "Policy X")])
    handles, links = extract_hyperlinks(doc)
    result = _resolution([RECORD])
    log = ChangeLog()
    apply_resolution(links, result, log)
    engine = MutationEngine(MutationOptions(BASE))

    changed = engine.apply(doc, bind_hyperlinks(extract_links(doc), links), result, log)

    assert changed == {"hl-0001"}
    handle = extract_links(doc)[0]
    assert handle.url == NEW_URL
    assert handle.display_text == "Policy X (654321)"
    assert links[0].action_taken == HyperlinkAction.UPDATED
    assert links[0].current_url == NEW_URL
    assert not links[0].requires_update
    entries_after_first = len(log.changes)

    again = engine.apply(doc, bind_hyperlinks(extract_links(doc), links), result, log)

    assert again == set()
    assert len(log.changes) == entries_after_first


def test_engine_expired_link_is_stable_on_second_pass(new_document):
    expired = RECORD.model_copy(update={"status": "Expired"})
    doc = new_document([(OLD_URL, "Policy X")])
    handles, links = extract_hyperlinks(doc)
    result = _resolution([expired])
    log = ChangeLog()
    apply_resolution(links, result, log)
    engine = MutationEngine(MutationOptions(BASE))

    engine.apply(doc, bind_hyperlinks(extract_links(doc), links), result, log)
    assert extract_links(doc)[0].display_text == "Policy X (654321) - Expired"

    assert engine.apply(doc, bind_hyperlinks(extract_links(doc), links), result, log) == set()


def test_persist_retarget_replaces_relationship_and_keeps_formatting(new_document):
    doc, handle, link = _single(
        new_document, "Policy X", url="https://x/page", anchor="!/view?docid=CMS-POL-654321", bold=True
    )
    old_rid = handle.rel_id

    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))
    persist_link_edit(doc, handle, edit)

    element = handle.element
    assert edit.state == LinkEditState.PERSISTED
    assert element.get(qn("w:anchor")) is None
    assert element.get(qn("r:id")) != old_rid
    assert old_rid not in doc.part.rels
    assert doc.part.rels[element.get(qn("r:id"))].target_ref == NEW_URL
    runs = element.findall(qn("w:r"))
    assert len(runs) == 1
    assert runs[0].find(qn("w:rPr")).find(qn("w:b")) is not None
    assert extract_links(doc)[0].display_text == "Policy X (654321)"


def test_persist_rolls_back_new_relationship_on_failure(new_document, monkeypatch):
    doc, handle, link = _single(new_document, "Policy X", anchor="frag")
    rels_before = {rid: rel.target_ref for rid, rel in doc.part.rels.items()}
    old_rid = handle.rel_id

    def boom(element, rid):
        element.set(qn("r:id"), rid)
        raise RuntimeError("repoint failed")

    monkeypatch.setattr(mutation, "_repoint", boom)
    edit = plan_link_edit(link, handle, RECORD, MutationOptions(BASE))

    with pytest.raises(RelationshipError):
        persist_link_edit(doc, handle, edit)

    assert {rid: rel.target_ref for rid, rel in doc.part.rels.items()} == rels_before
    assert handle.element.get(qn("r:id")) == old_rid
    assert handle.element.get(qn("w:anchor")) == "frag"
    assert extract_links(doc)[0].display_text == "Policy X"


def test_engine_records_failed_retarget_and_continues(new_document, monkeypatch):
    doc = new_document([(OLD_URL, "Policy X"), ("https://other/x", "Plain")])
    handles, links = extract_hyperlinks(doc)
    result = _resolution([RECORD])
    log = ChangeLog()
    apply_resolution(links, result, log)

    def boom(element, rid):
        raise RuntimeError("repoint failed")

    monkeypatch.setattr(mutation, "_repoint", boom)
    engine = MutationEngine(MutationOptions(BASE))

    changed = engine.apply(doc, bind_hyperlinks(extract_links(doc), links), result, log)

    assert changed == set()
    errors = [c for c in log.changes if c.type == ChangeType.ERROR]
    assert len(errors) == 1
    assert errors[0].element_id == "hl-0001"
    assert "repoint failed" in links[0].error_message
    assert [h.display_text for h in extract_links(doc)] == ["Policy X", "Plain"]


def test_engine_requires_target_address():
    with pytest.raises(ValueError):
        MutationEngine(MutationOptions(""))

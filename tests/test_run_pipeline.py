# tests/test_run_pipeline.py

import json
from pathlib import Path

import pytest

import src.run_pipeline as run_pipeline
from src.docx_link_pipeline.extractor import extract_links
from src.docx_link_pipeline.ooxml import open_document


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch):
    """Keep logs/ out of the repository and ignore pipeline env overrides."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "LINK_PIPELINE_API_URL",
        "LINK_PIPELINE_API_KEY",
        "LINK_PIPELINE_TARGET_ADDRESS",
        "LINK_PIPELINE_MAX_CONCURRENCY",
        "LINK_PIPELINE_BACKUP_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


def _metadata(output_dir: Path) -> dict:
    files = list(output_dir.glob("run_metadata*.json"))
    assert len(files) == 1
    return json.loads(files[0].read_text(encoding="utf-8"))


def test_pipeline_missing_input_exits_nonzero(tmp_path: Path):
    """
    If the input path does not exist, the CLI should fail with a non-zero
    exit code and not silently succeed.
    """
    output_dir = tmp_path / "output"

    exit_code = run_pipeline.main(
        ["--input", str(tmp_path / "does_not_exist"), "--output-dir", str(output_dir)]
    )

    assert exit_code != 0
    if output_dir.exists():
        assert len(list(output_dir.iterdir())) == 0


def test_pipeline_empty_directory_succeeds_with_zero_docs(tmp_path: Path):
    """
    An input directory without documents is a successful, empty run:
      - exit code 0
      - a changelog report and run metadata are still written
    """
    input_dir = tmp_path / "docs"
    input_dir.mkdir()
    output_dir = tmp_path / "output"

    exit_code = run_pipeline.main(["--input", str(input_dir), "--output-dir", str(output_dir)])

    assert exit_code == 0
    assert len(list(output_dir.glob("changelog*.txt"))) == 1
    assert _metadata(output_dir)["total"] == 0
    log_text = (tmp_path / "logs" / "pipeline.log").read_text(encoding="utf-8")
    for step in ("STEP 1/4", "STEP 2/4", "STEP 3/4", "STEP 4/4"):
        assert step in log_text


def test_pipeline_processes_documents_in_test_mode(tmp_path: Path, make_docx):
    docs = tmp_path / "docs"
    make_docx("a.docx", links=[("https://x/view?docid=CMS-A-111111", "Policy A")], directory=docs)
    make_docx("b.docx", links=[("https://x/b", "No identifier")], directory=docs)
    output_dir = tmp_path / "output"

    # 1) Run the CLI end-to-end against the canned lookup endpoint
    exit_code = run_pipeline.main(
        ["--input", str(docs), "--output-dir", str(output_dir), "--api-url", "test"]
    )

    # 2) Every document succeeded and the report reflects it
    assert exit_code == 0
    meta = _metadata(output_dir)
    assert meta["total"] == 2
    assert meta["succeeded"] == 2
    assert meta["unique_hyperlinks_changed"] == 1
    report = next(output_dir.glob("changelog*.txt")).read_text(encoding="utf-8")
    assert "Processed a.docx: 1 hyperlinks updated, 1 content IDs added, 1 possible title changes" in report
    assert "Processed b.docx: no changes required" in report

    # 3) The edited document carries the new target and suffix
    handle = extract_links(open_document(docs / "a.docx"))[0]
    assert handle.display_text == "Policy A (111111)"
    assert handle.url.endswith("#!/view?docid=TEST-DOC-0001")
    assert (docs / "Backups").is_dir()


def test_pipeline_flags_reach_the_session(tmp_path: Path, make_docx):
    docs = tmp_path / "docs"
    make_docx("a.docx", links=[("https://x/view?docid=CMS-A-111111", "Policy A")], directory=docs)
    output_dir = tmp_path / "output"

    exit_code = run_pipeline.main(
        [
            "--input",
            str(docs),
            "--output-dir",
            str(output_dir),
            "--no-backup",
            "--auto-replace-titles",
            "--no-history",
        ]
    )

    assert exit_code == 0
    assert not (docs / "Backups").exists()
    assert (output_dir / "changelog.txt").exists()
    assert (output_dir / "run_metadata.json").exists()
    handle = extract_links(open_document(docs / "a.docx"))[0]
    assert handle.display_text == "Test Document CMS-A-111111 (111111)"


def test_pipeline_failed_document_exits_nonzero(tmp_path: Path, make_docx):
    docs = tmp_path / "docs"
    make_docx("good.docx", links=[("https://x/a", "A")], directory=docs)
    (docs / "broken.docx").write_bytes(b"not a package")
    output_dir = tmp_path / "output"

    exit_code = run_pipeline.main(["--input", str(docs), "--output-dir", str(output_dir)])

    assert exit_code == 1
    meta = _metadata(output_dir)
    assert meta["failed"] == 1
    assert meta["succeeded"] == 1
    assert (docs / "broken.docx").read_bytes() == b"not a package"


def test_pipeline_validate_only(tmp_path: Path, make_docx):
    docs = tmp_path / "docs"
    good = make_docx("good.docx", links=[("https://x/a", "A")], directory=docs)
    before = good.read_bytes()

    assert run_pipeline.main(["--input", str(docs), "--validate-only"]) == 0
    assert good.read_bytes() == before

    (docs / "broken.docx").write_bytes(b"not a package")
    assert run_pipeline.main(["--input", str(docs), "--validate-only"]) == 1


def test_pipeline_unhandled_error_fails_fast(tmp_path: Path, make_docx, monkeypatch):
    """
    If the batch blows up unexpectedly, the CLI returns a non-zero code and
    writes no report.
    """
    docs = tmp_path / "docs"
    make_docx("a.docx", links=[("https://x/a", "A")], directory=docs)
    output_dir = tmp_path / "output"

    class ExplodingController:
        def __init__(self, *args, **kwargs):
            pass

        def process(self, paths, progress=None, token=None):
            raise RuntimeError("worker pool crashed")

    monkeypatch.setattr(run_pipeline, "BatchController", ExplodingController)

    exit_code = run_pipeline.main(["--input", str(docs), "--output-dir", str(output_dir)])

    assert exit_code == 1
    assert not output_dir.exists()


def test_pipeline_rules_file(tmp_path: Path, make_docx):
    docs = tmp_path / "docs"
    make_docx("a.docx", paragraphs=["The colour chart"], directory=docs)
    rules = tmp_path / "rules.json"
    rules.write_text(
        json.dumps({"text_rules": [{"source_text": "colour", "replacement_text": "color"}]}),
        encoding="utf-8",
    )
    output_dir = tmp_path / "output"

    exit_code = run_pipeline.main(
        ["--input", str(docs), "--output-dir", str(output_dir), "--rules", str(rules)]
    )

    assert exit_code == 0
    paragraphs = [p.text for p in open_document(docs / "a.docx").paragraphs]
    assert "The color chart" in paragraphs

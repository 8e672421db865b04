"""Pipeline CLI Entry Point

Provides the command-line interface for the hyperlink repair pipeline.
Handles argument parsing, logging configuration, and orchestration of a
batch run over Word documents, followed by the changelog report and run
metadata.

Usage:
    python -m src.run_pipeline --input docs/ --output-dir output
    python -m src.run_pipeline --input docs/a.docx --validate-only
"""

# run_pipeline.py
import argparse
import logging
import time
from datetime import datetime
from pathlib import Path

from src.docx_link_pipeline.batch import BatchController
from src.docx_link_pipeline.config import load_settings
from src.docx_link_pipeline.loaders import discover_documents, load_replacement_rules
from src.docx_link_pipeline.report import save_run_metadata, write_batch_report
from src.docx_link_pipeline.session import DocumentSessionCoordinator


def configure_logging() -> None:
    """Configure logging with both console and file output.

    Sets up:
      - Root logger at DEBUG level
      - Console handler at INFO level for user-facing messages
      - File handler at DEBUG level for detailed troubleshooting
      - Reduced verbosity for urllib3 and requests loggers
    """
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / "pipeline.log"

    # Root logger
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
    )

    # Console handler: high-level INFO+
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # File handler: detailed DEBUG+
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Clear existing handlers to avoid duplicates if run multiple times
    logger.handlers.clear()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Repair and annotate hyperlinks in Word documents"
    )
    parser.add_argument(
        "--input",
        type=Path,
        action="append",
        required=True,
        help="Document or directory to process (repeatable).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional JSON settings file.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory where the changelog report and run metadata are written.",
    )
    parser.add_argument(
        "--rules",
        type=Path,
        default=None,
        help="JSON file with hyperlink and text replacement rules.",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help="Lookup service endpoint ('test' for canned responses).",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Maximum documents processed in parallel (capped at 2x CPU count).",
    )
    parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not create backups before editing (failed documents cannot be restored)",
    )
    parser.add_argument(
        "--auto-replace-titles",
        action="store_true",
        help="Replace link titles with the title returned by the lookup service",
    )
    parser.add_argument(
        "--optimize-text",
        action="store_true",
        help="Collapse repeated spaces, empty paragraphs and repeated breaks",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only run the integrity checks; documents are not modified",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        help="Overwrite report files instead of creating timestamped versions",
    )
    return parser


def main(argv=None) -> int:
    """
    CLI entrypoint for the hyperlink repair pipeline.

    Parses command-line arguments, runs the batch end-to-end,
    and returns a Unix-style exit code (0 when every document succeeded,
    non-zero otherwise).
    """
    configure_logging()
    logger = logging.getLogger(__name__)

    args = build_parser().parse_args(argv)

    logger.info("=== Starting hyperlink repair pipeline ===")
    logger.info("Input: %s", ", ".join(str(p) for p in args.input))
    logger.info("Output directory: %s", args.output_dir)
    logger.info("Validate only: %s", args.validate_only)
    logger.info("Keep history: %s", not args.no_history)

    try:
        start_time = time.time()
        run_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        # ========== STEP 1: SETTINGS AND INPUTS ==========
        logger.info("STEP 1/4: Loading settings and discovering documents")
        settings = load_settings(args.config)
        if args.api_url:
            settings.api.base_url = args.api_url
        if args.max_concurrency:
            settings.processing.max_concurrent_documents = args.max_concurrency
        if args.no_backup:
            settings.processing.create_backup = False
        if args.auto_replace_titles:
            settings.validation.auto_replace_titles = True
        if args.optimize_text:
            settings.processing.optimize_text = True
        if args.rules:
            settings.replacement = load_replacement_rules(args.rules)

        paths = discover_documents(
            args.input,
            settings.processing.supported_extensions,
            skip_dir=settings.backup.backup_directory,
        )
        logger.info("✓ Found %d documents", len(paths))

        coordinator = DocumentSessionCoordinator(settings)

        if args.validate_only:
            logger.info("STEP 2/4: Validating %d documents", len(paths))
            invalid = 0
            for path in paths:
                issues = coordinator.validate(path)
                if issues:
                    invalid += 1
                    logger.error("✗ %s: %d issue(s)", path.name, len(issues))
                    for issue in issues:
                        logger.error("    %s", issue)
                else:
                    logger.info("✓ %s", path.name)
            logger.info("Validation finished: %d/%d documents valid", len(paths) - invalid, len(paths))
            return 1 if invalid else 0

        # ========== STEP 2: PROCESS DOCUMENTS ==========
        logger.info("STEP 2/4: Processing %d documents", len(paths))
        if not paths:
            logger.warning("No documents to process")

        controller = BatchController(
            coordinator,
            max_concurrent_documents=settings.processing.max_concurrent_documents,
        )
        result = controller.process(paths)

        # ========== STEP 3: BACKUP RETENTION ==========
        logger.info("STEP 3/4: Cleaning up old backups")
        backup_dirs = {d.backup_path.parent for d in result.documents if d.backup_path}
        for backup_dir in sorted(backup_dirs):
            coordinator.backups.cleanup_old_backups(backup_dir)

        # ========== STEP 4: REPORTS ==========
        logger.info("STEP 4/4: Writing changelog report and run metadata")
        output_paths = {
            "changelog": write_batch_report(
                result.documents, args.output_dir, run_timestamp, keep_history=not args.no_history
            )
        }
        output_paths["metadata"] = save_run_metadata(
            args.output_dir,
            run_timestamp,
            not args.no_history,
            {
                "inputs": [str(p) for p in args.input],
                "total": result.progress.total,
                "succeeded": result.progress.succeeded,
                "failed": result.progress.failed,
                "unique_hyperlinks_changed": len(result.progress.unique_hyperlinks_changed),
                "average_seconds": result.progress.average_seconds,
                "recent_errors": result.progress.recent_errors,
                "documents": [
                    {
                        "file": str(d.file_path),
                        "status": d.status.value,
                        "summary": d.change_log.summary,
                        "error": d.error_message,
                    }
                    for d in result.documents
                ],
                "duration_seconds": time.time() - start_time,
            },
        )

        elapsed_time = time.time() - start_time

        # Comprehensive summary
        logger.info("=" * 70)
        logger.info("Pipeline completed in %.2fs", elapsed_time)
        logger.info("")
        logger.info("Summary:")
        logger.info("  Documents:  %d", result.progress.total)
        logger.info("  Succeeded:  %d", result.progress.succeeded)
        logger.info("  Failed:     %d", result.progress.failed)
        logger.info("  Links:      %d changed", len(result.progress.unique_hyperlinks_changed))
        for error in result.progress.recent_errors:
            logger.info("  Error:      %s", error)
        logger.info("")
        logger.info("Output files:")
        for name, path in output_paths.items():
            logger.info("  %-12s %s", f"{name}:", path)
        logger.info("=" * 70)

    except Exception as e:
        logger.exception(f"Pipeline failed with an unhandled exception: {e}")
        return 1

    return 0 if result.all_succeeded else 1


if __name__ == "__main__":
    raise SystemExit(main())

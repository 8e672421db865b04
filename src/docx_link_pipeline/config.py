"""Configuration Module

Pydantic settings for the document pipeline. Settings are built from
defaults, optionally overlaid with a JSON file, and finally with
environment variables.

Environment variables:
  LINK_PIPELINE_API_URL: Lookup service endpoint ("test" for canned responses)
  LINK_PIPELINE_API_KEY: Optional API key sent as X-API-Key
  LINK_PIPELINE_API_TIMEOUT: Transport timeout in seconds (default: 30)
  LINK_PIPELINE_TOTAL_BUDGET: Total lookup budget in seconds (default: 75)
  LINK_PIPELINE_TARGET_ADDRESS: Base address used when retargeting links
  LINK_PIPELINE_MAX_CONCURRENCY: Maximum documents processed in parallel
  LINK_PIPELINE_BACKUP_DIR: Backup directory (relative to each document)
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import os

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TARGET_ADDRESS = "https://docs.example.com/nuxeo/thesource/"

DEFAULT_EXACT_ALLOWLIST = [
    "The attribute 'w:firstRow' is not declared.",
    "The attribute 'w:lastRow' is not declared.",
    "The attribute 'w:firstColumn' is not declared.",
    "The attribute 'w:lastColumn' is not declared.",
    "The attribute 'w:noHBand' is not declared.",
    "The attribute 'w:noVBand' is not declared.",
]

DEFAULT_PREFIX_ALLOWLIST = [
    "The attribute 'w:id' has invalid value",
]


class ProcessingSettings(BaseModel):
    max_concurrent_documents: int = 200
    create_backup: bool = True
    validate_hyperlinks: bool = True
    add_content_ids: bool = True
    optimize_text: bool = False
    supported_extensions: List[str] = Field(default_factory=lambda: [".docx", ".docm"])

    @field_validator("max_concurrent_documents")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_documents must be >= 1")
        return v

    @field_validator("supported_extensions")
    @classmethod
    def _normalize_extensions(cls, v: List[str]) -> List[str]:
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]


class ValidationSettings(BaseModel):
    auto_replace_titles: bool = False
    report_title_differences: bool = True


class ApiSettings(BaseModel):
    base_url: str = "test"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    total_budget_seconds: float = 75.0
    target_base_address: str = DEFAULT_TARGET_ADDRESS

    @field_validator("timeout_seconds", "total_budget_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @property
    def is_test_mode(self) -> bool:
        return self.base_url.strip().lower() == "test"


class HyperlinkReplacementRule(BaseModel):
    title_to_match: str
    content_id: str
    enabled: bool = True


class TextReplacementRule(BaseModel):
    source_text: str
    replacement_text: str
    enabled: bool = True


class ReplacementSettings(BaseModel):
    hyperlink_rules: List[HyperlinkReplacementRule] = Field(default_factory=list)
    text_rules: List[TextReplacementRule] = Field(default_factory=list)
    preserve_capitalization: bool = True


class BackupSettings(BaseModel):
    backup_directory: str = "Backups"
    keep_last_n: int = 10
    restore_timeout_seconds: float = 30.0
    restore_retry_timeout_seconds: float = 15.0


class IntegritySettings(BaseModel):
    exact_allowlist: List[str] = Field(default_factory=lambda: list(DEFAULT_EXACT_ALLOWLIST))
    prefix_allowlist: List[str] = Field(default_factory=lambda: list(DEFAULT_PREFIX_ALLOWLIST))
    schema_path: Optional[Path] = None


class AppSettings(BaseModel):
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    replacement: ReplacementSettings = Field(default_factory=ReplacementSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    integrity: IntegritySettings = Field(default_factory=IntegritySettings)


# (env var, section, field)
_ENV_OVERRIDES = [
    ("LINK_PIPELINE_API_URL", "api", "base_url"),
    ("LINK_PIPELINE_API_KEY", "api", "api_key"),
    ("LINK_PIPELINE_API_TIMEOUT", "api", "timeout_seconds"),
    ("LINK_PIPELINE_TOTAL_BUDGET", "api", "total_budget_seconds"),
    ("LINK_PIPELINE_TARGET_ADDRESS", "api", "target_base_address"),
    ("LINK_PIPELINE_MAX_CONCURRENCY", "processing", "max_concurrent_documents"),
    ("LINK_PIPELINE_BACKUP_DIR", "backup", "backup_directory"),
]


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, section, field in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        logger.debug("Config override from %s", env_name)
        data.setdefault(section, {})[field] = value
    return data


def load_settings(path: Optional[Path | str] = None) -> AppSettings:
    """
    Build settings from defaults, an optional JSON file and the environment.

    Args:
        path: Optional JSON file with any subset of the AppSettings sections

    Returns:
        Validated AppSettings

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        ConfigurationError: If the file is not valid JSON or a value is invalid
    """
    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        logger.info("Loaded configuration from %s", path)

    data = _apply_env(data)

    try:
        return AppSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

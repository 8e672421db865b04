"""Metadata Resolver

Batches every lookup identifier found in a document into a single request
to the lookup service and maps the response back onto the per-link models.

Key features:
  - One outbound request per document (case-insensitive de-duplication)
  - Lookup dictionary keyed by both Document_ID and Content_ID
  - Tolerant response parsing (property names matched case-insensitively,
    underscores ignored)
  - Bounded total time budget, cancellable without losing the link analysis
    already stored on the document
  - "test" endpoint returning canned records without network I/O
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging
import time

import requests

from .cancellation import CancellationToken, NEVER_CANCELLED
from .config import ApiSettings
from .errors import (
    OperationCancelledError,
    ResolverError,
    ResolverTimeoutError,
    RetryExhaustedError,
)
from .models import (
    ChangeLog,
    ChangeType,
    DocumentRecord,
    Hyperlink,
    HyperlinkAction,
    HyperlinkStatus,
    LookupResponse,
)
from .retry import HTTP_POLICY, RetryPolicy, execute

logger = logging.getLogger(__name__)

EXPIRED_SUFFIX = " - Expired"
NOT_FOUND_SUFFIX = " - Not Found"

# Poll interval while waiting on the transport thread.
_CANCEL_POLL_SECONDS = 0.25


def has_terminal_suffix(text: str) -> bool:
    lowered = (text or "").lower()
    return EXPIRED_SUFFIX.lower() in lowered or NOT_FOUND_SUFFIX.lower() in lowered


def collect_lookup_ids(
    hyperlinks: Iterable[Hyperlink],
    extra_ids: Iterable[str] = (),
) -> List[str]:
    """Union of lookup ids, de-duplicated case-insensitively, order preserved."""
    seen = set()
    ids: List[str] = []
    candidates = [h.lookup_id for h in hyperlinks] + list(extra_ids)
    for value in candidates:
        if not value:
            continue
        key = value.strip().upper()
        if not key or key in seen:
            continue
        seen.add(key)
        ids.append(value.strip())
    return ids


def _normalize_key(key: str) -> str:
    return key.replace("_", "").lower()


def _field(data: Dict[str, Any], name: str) -> Any:
    wanted = _normalize_key(name)
    for key, value in data.items():
        if _normalize_key(str(key)) == wanted:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_lookup_response(payload: Dict[str, Any]) -> LookupResponse:
    """Parse a lookup-service JSON body into a LookupResponse."""
    if not isinstance(payload, dict):
        raise ResolverError(f"Unexpected lookup response type: {type(payload).__name__}")

    raw_results = _field(payload, "Results") or []
    if not isinstance(raw_results, list):
        raise ResolverError("Lookup response 'Results' is not a list")

    records: List[DocumentRecord] = []
    for item in raw_results:
        if not isinstance(item, dict):
            logger.warning("Skipping non-object lookup result: %r", item)
            continue
        records.append(
            DocumentRecord(
                document_id=_text(_field(item, "Document_ID")),
                content_id=_text(_field(item, "Content_ID")),
                title=_text(_field(item, "Title")),
                status=_text(_field(item, "Status")),
                lookup_id=_text(_field(item, "Lookup_ID")),
            )
        )

    return LookupResponse(
        version=_text(_field(payload, "Version")),
        changes=_text(_field(payload, "Changes")),
        results=records,
    )


def build_lookup(records: Iterable[DocumentRecord]) -> Dict[str, DocumentRecord]:
    """
    Case-insensitive dictionary keyed by Document_ID and Content_ID.

    Both keys may map to the same record. When two records share a key the
    first one wins.
    """
    lookup: Dict[str, DocumentRecord] = {}
    for record in records:
        for key in (record.document_id, record.content_id):
            if not key:
                continue
            norm = key.upper()
            if norm in lookup:
                logger.debug("Duplicate lookup key %s; keeping first record", key)
                continue
            lookup[norm] = record
    return lookup


@dataclass
class ResolutionResult:
    response: LookupResponse
    lookup: Dict[str, DocumentRecord] = field(default_factory=dict)
    found: List[DocumentRecord] = field(default_factory=list)
    expired: List[DocumentRecord] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def get(self, lookup_id: Optional[str]) -> Optional[DocumentRecord]:
        if not lookup_id:
            return None
        return self.lookup.get(lookup_id.strip().upper())


def canned_response(ids: List[str]) -> Dict[str, Any]:
    """Offline response used when the endpoint is configured as "test"."""
    results = []
    for idx, lookup_id in enumerate(ids, start=1):
        results.append(
            {
                "Document_ID": f"TEST-DOC-{idx:04d}",
                "Content_ID": lookup_id,
                "Title": f"Test Document {lookup_id}",
                "Status": "Released",
                "Lookup_ID": lookup_id,
            }
        )
    return {"Version": "test", "Changes": "", "Results": results}


class MetadataResolver:
    """Client for the lookup service."""

    def __init__(
        self,
        settings: ApiSettings,
        session: Optional[requests.Session] = None,
        policy: RetryPolicy = HTTP_POLICY,
    ):
        if settings is None:
            raise ValueError("settings is required")
        self.settings = settings
        self.session = session or requests.Session()
        self.policy = policy

    def _post(self, ids: List[str]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.settings.api_key:
            headers["X-API-Key"] = self.settings.api_key
        response = self.session.post(
            self.settings.base_url,
            json={"Lookup_ID": ids},
            headers=headers,
            timeout=self.settings.timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    def fetch(self, ids: List[str], token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Send the lookup request under the HTTP retry policy.

        The call runs on a helper thread so the caller can stop waiting when
        the token is cancelled or the total budget runs out.

        Raises:
            OperationCancelledError: If the token is cancelled while waiting
            ResolverTimeoutError: If the total budget is exceeded
            ResolverError: On transport or HTTP errors after retries
        """
        token = token or NEVER_CANCELLED
        if self.settings.is_test_mode:
            logger.info("Lookup endpoint is 'test'; returning canned response")
            return canned_response(ids)

        deadline = time.monotonic() + self.settings.total_budget_seconds
        # Stops the retry loop on the helper thread once this call gives up.
        attempt_token = CancellationToken()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lookup")
        try:
            future = executor.submit(
                execute,
                lambda: self._post(ids),
                self.policy,
                attempt_token,
                "metadata lookup",
            )
            while True:
                token.raise_if_cancelled()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ResolverTimeoutError(
                        f"Metadata lookup exceeded {self.settings.total_budget_seconds:.0f}s budget"
                    )
                try:
                    return future.result(timeout=min(_CANCEL_POLL_SECONDS, remaining))
                except FutureTimeoutError:
                    continue
        except (RetryExhaustedError, requests.RequestException, ValueError) as e:
            raise ResolverError(f"Metadata lookup failed: {e}") from e
        finally:
            attempt_token.cancel("Metadata lookup abandoned")
            executor.shutdown(wait=False, cancel_futures=True)

    def resolve(
        self,
        ids: List[str],
        token: Optional[CancellationToken] = None,
    ) -> ResolutionResult:
        """Resolve ``ids`` in one request and split results for reporting."""
        if not ids:
            logger.debug("No lookup ids to resolve")
            return ResolutionResult(response=LookupResponse())

        t0 = time.time()
        logger.info("Resolving %d lookup ids", len(ids))
        payload = self.fetch(ids, token)
        response = parse_lookup_response(payload)
        lookup = build_lookup(response.results)

        result = ResolutionResult(response=response, lookup=lookup)
        for record in response.results:
            if record.is_expired:
                result.expired.append(record)
            else:
                result.found.append(record)
        result.missing = [i for i in ids if i.strip().upper() not in lookup]

        logger.info(
            "✓ Lookup returned %d records in %.2fs (found=%d, expired=%d, missing=%d)",
            len(response.results),
            time.time() - t0,
            len(result.found),
            len(result.expired),
            len(result.missing),
        )
        return result


def apply_resolution(
    hyperlinks: Iterable[Hyperlink],
    result: ResolutionResult,
    change_log: ChangeLog,
) -> int:
    """
    Copy resolved metadata onto each link and set its status.

    Links whose id is absent from the response become NOT_FOUND unless the
    display text already carries a terminal status suffix. Returns the
    number of links that were matched.
    """
    matched = 0
    for link in hyperlinks:
        if link.action_taken == HyperlinkAction.REMOVED or not link.lookup_id:
            continue
        record = result.get(link.lookup_id)
        if record is not None:
            link.content_id = record.content_id
            link.document_id = record.document_id
            link.title = record.title
            link.status = (
                HyperlinkStatus.EXPIRED if record.is_expired else HyperlinkStatus.ACTIVE
            )
            matched += 1
            continue

        if has_terminal_suffix(link.display_text):
            logger.debug("Link %s already carries a status suffix", link.id)
            continue

        link.status = HyperlinkStatus.NOT_FOUND
        change_log.add(
            ChangeType.INFORMATION,
            "Lookup identifier not found",
            element_id=link.id,
            old_value=link.lookup_id,
            details=f"No record returned for {link.lookup_id}",
        )
    return matched

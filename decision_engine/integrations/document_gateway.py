"""Hosted document store gateway.

Proposals written in the collaborative editor keep their content in an
externally hosted document. Each proposal field lives in a named fragment
(``title``, ``category``, ``budget`` and one fragment per dynamic template
key) whose value is rich-text JSON content.

Contract:
  GET {DOCUMENT_STORE_URL}/documents/{doc_id}
    200 → {"fragments": {"<name>": <JSONContent>, ...}}
    404 → document was never created (legacy proposal)

Provider constants:
  timeout    = DOCUMENT_STORE_TIMEOUT (default 5 s)
  retry_max  = 1   (one retry on 5xx / network error; 404 is final)
  backoff    = [0.5] seconds

A failed or slow fetch is not an error for callers: the validator and read
paths fall back to the locally stored proposal data.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 5
_RETRY_MAX = 1
_RETRY_BACKOFF_SECONDS = [0.5]


class DocumentResult:
    """Typed result returned by all DocumentStoreGateway methods.

    Always check .ok before accessing .data.
    Never raises; all errors are captured in .error.
    """

    __slots__ = ("ok", "status_code", "data", "error", "duration_ms")

    def __init__(
        self,
        *,
        ok: bool,
        status_code: int | None,
        data: dict | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    @property
    def fragments(self) -> dict:
        if not self.ok or not isinstance(self.data, dict):
            return {}
        fragments = self.data.get("fragments")
        return fragments if isinstance(fragments, dict) else {}

    def to_log_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class DocumentStoreGateway:
    """Read-only client for the hosted collaborative document store."""

    def __init__(
        self,
        base_url: str,
        secret: str | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self._secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config=None) -> "DocumentStoreGateway":
        config = config if config is not None else current_app.config
        return cls(
            config.get("DOCUMENT_STORE_URL", ""),
            config.get("DOCUMENT_STORE_SECRET") or None,
            timeout=int(config.get("DOCUMENT_STORE_TIMEOUT", _DEFAULT_TIMEOUT)),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        return headers

    def get_document(self, doc_id: str) -> DocumentResult:
        """Fetch a hosted document with all of its fragments.

        Returns:
            DocumentResult. Always returns, never raises.
        """
        if not self.is_configured:
            return DocumentResult(
                ok=False, status_code=None, data=None,
                error="Document store not configured", duration_ms=0,
            )

        url = f"{self.base_url}/documents/{doc_id}"
        last_error = "Unknown error"
        last_status: int | None = None

        for attempt in range(_RETRY_MAX + 1):
            try:
                t0 = time.perf_counter()
                resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        return DocumentResult(
                            ok=False, status_code=resp.status_code, data=None,
                            error="Invalid JSON in document response",
                            duration_ms=duration_ms,
                        )
                    return DocumentResult(
                        ok=True, status_code=resp.status_code, data=data,
                        error=None, duration_ms=duration_ms,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                if resp.status_code < 500:
                    # 404 and other client errors are final
                    logger.info("Document %s unavailable status=%d", doc_id, resp.status_code)
                    return DocumentResult(
                        ok=False, status_code=resp.status_code, data=None,
                        error=last_error, duration_ms=duration_ms,
                    )
                logger.warning(
                    "Document store request failed attempt=%d/%d status=%d doc_id=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, doc_id,
                )

            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "Document store request timed out attempt=%d/%d doc_id=%s",
                    attempt + 1, _RETRY_MAX + 1, doc_id,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                logger.warning(
                    "Document store network error attempt=%d/%d doc_id=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, doc_id, last_error,
                )

            if attempt < _RETRY_MAX:
                time.sleep(_RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)])

        return DocumentResult(
            ok=False, status_code=last_status, data=None,
            error=last_error, duration_ms=0,
        )


# ── Rich-text helpers ────────────────────────────────────────────────────────

_BLOCK_NODES = {"paragraph", "heading", "blockquote", "listItem", "codeBlock"}


def fragment_text(content: Any) -> str:
    """Flatten rich-text JSON content into plain text.

    Accepts a plain string (returned as-is), a node dict
    (``{"type": ..., "text": ..., "content": [...]}``) or a list of nodes.
    Block nodes are separated by newlines.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (int, float)) and not isinstance(content, bool):
        return str(content)
    if isinstance(content, list):
        parts = [fragment_text(node) for node in content]
        return "\n".join(p for p in parts if p)
    if not isinstance(content, dict):
        return ""

    if "text" in content and isinstance(content["text"], str):
        return content["text"]

    children = content.get("content") or []
    if content.get("type") == "doc" or any(
        isinstance(c, dict) and c.get("type") in _BLOCK_NODES for c in children
    ):
        parts = [fragment_text(c) for c in children]
        return "\n".join(p for p in parts if p)
    return "".join(fragment_text(c) for c in children)


def fetch_document_fragments(doc_id: str, gateway: DocumentStoreGateway | None = None) -> dict | None:
    """Return ``{fragment_name: plain_text}`` for a hosted document, or None.

    None means "use the locally stored values": the store is unconfigured,
    unreachable, timed out, or the document does not exist.
    """
    gateway = gateway or DocumentStoreGateway.from_config()
    result = gateway.get_document(doc_id)
    if not result.ok:
        logger.debug("Falling back to stored proposal data for doc %s: %s", doc_id, result.error)
        return None
    return {name: fragment_text(value) for name, value in result.fragments.items()}

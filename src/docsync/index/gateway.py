"""Elasticsearch persistence gateway.

The only component that mutates the search index. It speaks the REST API
directly over httpx and holds no state besides the HTTP client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
from urllib.parse import quote

import httpx

from docsync.config import AppConfig
from docsync.errors import FailureKind, ProcessingError
from docsync.models import IndexableDocument

LOGGER = logging.getLogger(__name__)

SUCCESS_RESULTS = {"created", "updated", "noop"}


@dataclass(slots=True)
class BulkResult:
    attempted: int = 0
    succeeded: int = 0
    filtered: int = 0
    failures: List[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _doc_path(index_name: str, document_id: str) -> str:
    return f"/{quote(index_name, safe='')}/_doc/{quote(document_id, safe='')}"


def _error_reason(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("reason") or error.get("type") or error)
        if error is not None:
            return str(error)
    return str(payload)


class ElasticsearchGateway:
    """Upsert, delete and bulk-upsert documents keyed by their id."""

    def __init__(self, client: httpx.Client, index_name: str) -> None:
        self.client = client
        self.index_name = index_name

    @classmethod
    def from_config(cls, config: AppConfig) -> "ElasticsearchGateway":
        auth = None
        if config.elasticsearch_username:
            auth = (config.elasticsearch_username, config.elasticsearch_password or "")
        client = httpx.Client(
            base_url=config.elasticsearch_url,
            auth=auth,
            verify=config.elasticsearch_verify,
            timeout=config.elasticsearch_timeout,
        )
        return cls(client, config.index_name)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            LOGGER.error("Elasticsearch %s %s failed: %s", method, url, exc)
            raise ProcessingError(FailureKind.PERSISTENCE, f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def upsert_one(self, document: IndexableDocument) -> str:
        """Write ``document`` as a full replace; returns created/updated/noop."""
        if not document.id:
            raise ValueError("Document id must not be empty")

        LOGGER.debug("Indexing document %s into %s", document.id, self.index_name)
        response = self._request("PUT", _doc_path(self.index_name, document.id), json=document.to_index_body())
        payload = self._json(response)
        if response.status_code not in (200, 201):
            reason = _error_reason(payload) if payload else response.text
            LOGGER.error("Indexing %s failed with HTTP %s: %s", document.id, response.status_code, reason)
            raise ProcessingError(
                FailureKind.PERSISTENCE,
                f"Indexing {document.id} failed with HTTP {response.status_code}: {reason}",
            )

        result = str(payload.get("result", "updated"))
        if result not in SUCCESS_RESULTS:
            LOGGER.warning("Unexpected index result for %s: %s", document.id, result)
        elif result == "noop":
            LOGGER.info("Document %s unchanged (noop)", document.id)
        else:
            LOGGER.info("Document %s %s in %s, version %s", document.id, result, self.index_name, payload.get("_version"))
        return result

    def delete_one(self, document_id: str) -> str:
        """Delete by id. A missing document counts as success and returns ``not_found``."""
        if not document_id or not document_id.strip():
            raise ValueError("Document id must not be empty")

        response = self._request("DELETE", _doc_path(self.index_name, document_id))
        payload = self._json(response)
        if response.status_code == 404:
            LOGGER.info("Document %s not found in %s, nothing to delete", document_id, self.index_name)
            return "not_found"
        if response.status_code != 200:
            reason = _error_reason(payload) if payload else response.text
            LOGGER.error("Deleting %s failed with HTTP %s: %s", document_id, response.status_code, reason)
            raise ProcessingError(
                FailureKind.PERSISTENCE,
                f"Deleting {document_id} failed with HTTP {response.status_code}: {reason}",
            )
        LOGGER.info("Document %s deleted from %s", document_id, self.index_name)
        return str(payload.get("result", "deleted"))

    def bulk_upsert(self, documents: Sequence[IndexableDocument]) -> BulkResult:
        """Index many documents in one request.

        Documents without an id are dropped before submission. Per-item errors
        mark the result as failed but items that made it stay indexed.
        """
        valid = [doc for doc in documents if doc is not None and doc.id]
        result = BulkResult(filtered=len(documents) - len(valid))
        if result.filtered:
            LOGGER.warning("Dropped %d documents without an id from bulk request", result.filtered)
        if not valid:
            LOGGER.info("No documents to bulk index")
            return result

        lines: List[str] = []
        for doc in valid:
            lines.append(json.dumps({"index": {"_index": self.index_name, "_id": doc.id}}))
            lines.append(json.dumps(doc.to_index_body(), ensure_ascii=False))
        body = ("\n".join(lines) + "\n").encode("utf-8")

        LOGGER.info("Bulk indexing %d documents into %s", len(valid), self.index_name)
        response = self._request(
            "POST", "/_bulk", content=body, headers={"Content-Type": "application/x-ndjson"}
        )
        payload = self._json(response)
        if response.status_code != 200:
            reason = _error_reason(payload) if payload else response.text
            raise ProcessingError(
                FailureKind.PERSISTENCE, f"Bulk request failed with HTTP {response.status_code}: {reason}"
            )

        result.attempted = len(valid)
        items = payload.get("items") or []
        for item in items:
            outcome = next(iter(item.values()), {})
            if outcome.get("error") is not None:
                reason = _error_reason(outcome)
                result.failures.append((str(outcome.get("_id")), reason))
                LOGGER.error("Bulk item %s failed: %s", outcome.get("_id"), reason)
            else:
                result.succeeded += 1

        if len(items) != len(valid) or (payload.get("errors") and not result.failures):
            LOGGER.error("Bulk response reported %d items for %d documents", len(items), len(valid))
            # Items come back in request order, so unanswered documents are the tail.
            missing = valid[len(items):]
            for doc in missing:
                result.failures.append((doc.id, "no result returned for bulk item"))
            if not missing:
                result.failures.append(("", f"bulk response inconsistent with {len(valid)} submitted documents"))

        if result.ok:
            LOGGER.info("Bulk indexed %d documents", result.succeeded)
        else:
            LOGGER.warning(
                "Bulk request partially failed: %d of %d succeeded", result.succeeded, result.attempted
            )
        return result

    def count(self, index_name: str | None = None) -> int:
        index_name = index_name or self.index_name
        response = self._request("GET", f"/{quote(index_name, safe='')}/_count")
        payload = self._json(response)
        if response.status_code != 200:
            raise ProcessingError(FailureKind.PERSISTENCE, f"Count failed: {_error_reason(payload)}")
        return int(payload.get("count", 0))

    def cluster_health(self) -> Dict[str, Any]:
        response = self._request("GET", "/_cluster/health")
        payload = self._json(response)
        if response.status_code != 200:
            raise ProcessingError(FailureKind.PERSISTENCE, f"Cluster health failed: {_error_reason(payload)}")
        keys = (
            "cluster_name",
            "status",
            "number_of_nodes",
            "number_of_data_nodes",
            "active_primary_shards",
            "active_shards",
            "relocating_shards",
            "initializing_shards",
            "unassigned_shards",
        )
        return {key: payload.get(key) for key in keys}

    def index_stats(self, index_name: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"documentCount": self.count(index_name)}
        response = self._request("GET", f"/_cat/indices/{quote(index_name, safe='')}", params={"format": "json"})
        try:
            rows = response.json() if response.status_code == 200 else []
        except ValueError:
            rows = []
        if rows:
            row = rows[0]
            stats.update(
                {
                    "health": row.get("health"),
                    "status": row.get("status"),
                    "primaryShards": row.get("pri"),
                    "replicaShards": row.get("rep"),
                    "docsDeleted": row.get("docs.deleted"),
                    "storeSize": row.get("store.size"),
                }
            )
        return stats

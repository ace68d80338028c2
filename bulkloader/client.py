from dataclasses import dataclass, field
import json
import logging
from typing import Any

import requests

from bulkloader.schemas import ErrorDetail, RawRecord


logger = logging.getLogger(__name__)


class RemoteServiceError(RuntimeError):
    """A remote call failed or answered with an error payload."""


@dataclass(frozen=True)
class ImportResponse:
    batch_processed: int
    succeeded: int
    partial: int
    errors: int
    error_details: list[ErrorDetail] = field(default_factory=list)
    produced_ids: list[str] = field(default_factory=list)
    ancillary_content: object | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], batch_len: int) -> "ImportResponse":
        details = [
            ErrorDetail(title=str(item.get("title") or "Unknown"), error=str(item.get("error") or "Unknown error"))
            for item in payload.get("errorDetails") or []
            if isinstance(item, dict)
        ]
        produced = payload.get("producedIds") or payload.get("insertedIds") or []
        ancillary = payload.get("ancillaryContent")
        if ancillary is None:
            ancillary = payload.get("export")
        return cls(
            batch_processed=int(payload.get("batchProcessed", batch_len)),
            succeeded=int(payload.get("succeeded", payload.get("inserted", 0)) or 0),
            partial=int(payload.get("partial", payload.get("skipped", 0)) or 0),
            errors=int(payload.get("errors", 0) or 0),
            error_details=details,
            produced_ids=[str(item) for item in produced if item is not None],
            ancillary_content=ancillary,
        )


@dataclass(frozen=True)
class EnrichResponse:
    processed: int
    errors: int


def extract_error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error", "message"):
            if isinstance(body.get(key), str):
                return body[key]
    return json.dumps(body)


class ImportServiceClient:
    def __init__(
        self,
        import_url: str,
        enrich_url: str,
        *,
        token: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.import_url = import_url
        self.enrich_url = enrich_url
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def import_batch(self, records: list[RawRecord], options: dict[str, object] | None = None) -> ImportResponse:
        payload = self._post(self.import_url, {"records": records, "options": options or {}})
        return ImportResponse.from_payload(payload, len(records))

    def enrich(self, identifiers: list[str], *, concurrency_hint: int, delay_hint_ms: int) -> EnrichResponse:
        payload = self._post(
            self.enrich_url,
            {"identifiers": identifiers, "concurrencyHint": concurrency_hint, "delayHint": delay_hint_ms},
        )
        return EnrichResponse(
            processed=int(payload.get("processed", 0) or 0),
            errors=int(payload.get("errors", 0) or 0),
        )

    def close(self) -> None:
        self.session.close()

    def _post(self, url: str, body: dict[str, object]) -> dict[str, Any]:
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise RemoteServiceError(f"request to {url} timed out after {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise RemoteServiceError(f"request to {url} failed: {exc}") from exc

        if not response.ok:
            raise RemoteServiceError(extract_error_message(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteServiceError(f"invalid JSON from {url}") from exc

        if not isinstance(payload, dict):
            raise RemoteServiceError(f"unexpected response shape from {url}")
        # Services may answer 200 with an error body.
        if payload.get("error"):
            raise RemoteServiceError(str(payload["error"]))
        return payload

"""Async Firestore REST client implementing the entity store interface.
Assumes OAuth2 client-credentials flow; without credentials (emulator) no token is sent.
"""
from __future__ import annotations
import logging
import os
import re
import time
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

import httpx
from dotenv import load_dotenv

from .errors import StoreUnavailable
from .store import Document
from .time_utils import ensure_utc

load_dotenv()

logger = logging.getLogger(__name__)

_BASE_URL = os.getenv("FIRESTORE_BASE_URL", "https://firestore.googleapis.com/v1")
_PROJECT_ID = os.getenv("FIRESTORE_PROJECT_ID", "osteo-app")
_DATABASE = os.getenv("FIRESTORE_DATABASE", "(default)")
_TOKEN_URL = os.getenv("FIRESTORE_TOKEN_URL", "https://oauth2.googleapis.com/token")
_CLIENT_ID = os.getenv("FIRESTORE_CLIENT_ID")
_CLIENT_SECRET = os.getenv("FIRESTORE_CLIENT_SECRET")
_TIMEOUT = float(os.getenv("FIRESTORE_TIMEOUT", "15"))

_TOKEN_CACHE: dict[str, float | str | None] = {"token": None, "exp": 0.0}

# Firestore returns nanosecond precision; datetime only takes microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


async def _get_token() -> Optional[str]:
    """Fetch and cache bearer token until five minutes before it expires."""
    if not _CLIENT_ID or not _CLIENT_SECRET:
        return None
    now = time.time()
    if _TOKEN_CACHE["token"] and now < _TOKEN_CACHE["exp"]:
        return _TOKEN_CACHE["token"]  # type: ignore

    try:
        async with httpx.AsyncClient(http2=True, timeout=_TIMEOUT) as client:
            resp = await client.post(
                _TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=(_CLIENT_ID, _CLIENT_SECRET),
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as exc:
        logger.error("Failed to obtain Firestore token: %s", exc)
        raise StoreUnavailable("Failed to obtain Firestore token") from exc
    token = data["access_token"]
    # default expires_in 3600 seconds = 1 hour
    _TOKEN_CACHE.update(token=token, exp=now + data.get("expires_in", 3600) - 300)
    return token


def encode_value(value: Any) -> dict[str, Any]:
    """Wrap a Python value in Firestore's typed value envelope."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": ensure_utc(value).isoformat().replace("+00:00", "Z")}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def encode_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    # the document id lives in the resource name, not in the fields
    return {key: encode_value(val) for key, val in record.items() if key != "id"}


def decode_value(envelope: Mapping[str, Any]) -> Any:
    """Unwrap a Firestore typed value."""
    if "nullValue" in envelope:
        return None
    if "booleanValue" in envelope:
        return bool(envelope["booleanValue"])
    if "integerValue" in envelope:
        return int(envelope["integerValue"])
    if "doubleValue" in envelope:
        return float(envelope["doubleValue"])
    if "timestampValue" in envelope:
        text = _FRACTION_RE.sub(r"\1", envelope["timestampValue"]).replace("Z", "+00:00")
        return ensure_utc(datetime.fromisoformat(text))
    if "stringValue" in envelope:
        return envelope["stringValue"]
    if "mapValue" in envelope:
        return decode_fields(envelope["mapValue"].get("fields", {}))
    if "arrayValue" in envelope:
        return [decode_value(item) for item in envelope["arrayValue"].get("values", [])]
    if "referenceValue" in envelope:
        return envelope["referenceValue"]
    raise ValueError(f"Unsupported Firestore value: {sorted(envelope)}")


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: decode_value(val) for key, val in fields.items()}


def decode_document(payload: Mapping[str, Any]) -> Document:
    """Turn a Firestore document resource into a plain dict carrying its ``id``."""
    doc = decode_fields(payload.get("fields", {}))
    doc["id"] = payload["name"].rsplit("/", 1)[-1]
    return doc


def build_where(fields: Mapping[str, Any]) -> dict[str, Any]:
    filters = [
        {"fieldFilter": {"field": {"fieldPath": key}, "op": "EQUAL", "value": encode_value(val)}}
        for key, val in fields.items()
    ]
    if len(filters) == 1:
        return filters[0]
    return {"compositeFilter": {"op": "AND", "filters": filters}}


class FirestoreStore:
    """Entity store backed by the Firestore REST API.

    Every call is a single attempt: retry policy belongs to the caller.
    """

    def __init__(
        self,
        *,
        base_url: str = _BASE_URL,
        project_id: str = _PROJECT_ID,
        database: str = _DATABASE,
        timeout: float = _TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.documents_path = f"projects/{project_id}/databases/{database}/documents"
        self.timeout = timeout

    def _doc_url(self, collection: str, doc_id: str) -> str:
        return f"{self.base_url}/{self.documents_path}/{collection}/{doc_id}"

    async def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await _get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = await self._headers()
        try:
            async with httpx.AsyncClient(http2=True, timeout=self.timeout) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Firestore %s %s failed: %s", method, url, exc)
            raise StoreUnavailable(f"Firestore {method} request failed") from exc
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Firestore error response: status=%s body=%s", resp.status_code, resp.text[:2048])
            raise StoreUnavailable(f"Firestore responded with status {resp.status_code}") from exc

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        resp = await self._send("GET", self._doc_url(collection, doc_id))
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        return decode_document(resp.json())

    async def query_by_equality(self, collection: str, fields: Mapping[str, Any]) -> list[Document]:
        body: dict[str, Any] = {"structuredQuery": {"from": [{"collectionId": collection}]}}
        if fields:
            body["structuredQuery"]["where"] = build_where(fields)
        resp = await self._send("POST", f"{self.base_url}/{self.documents_path}:runQuery", json=body)
        self._raise_for_status(resp)
        # an empty result still yields one entry carrying only readTime
        return [decode_document(entry["document"]) for entry in resp.json() if "document" in entry]

    async def put(self, collection: str, doc_id: str, record: Mapping[str, Any]) -> None:
        resp = await self._send("PATCH", self._doc_url(collection, doc_id), json={"fields": encode_fields(record)})
        self._raise_for_status(resp)

    async def delete(self, collection: str, doc_id: str) -> None:
        resp = await self._send("DELETE", self._doc_url(collection, doc_id))
        self._raise_for_status(resp)

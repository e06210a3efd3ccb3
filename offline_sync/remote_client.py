"""Remote store client contract and its HTTP implementation."""
from typing import Dict, Any, Optional
from urllib.parse import quote

import requests

from offline_sync import settings
from offline_sync.errors import PermanentRemoteError, RetryableRemoteError
from offline_sync.logging_conf import logger
from offline_sync.queue.models import OperationType

RETRYABLE_STATUS_CODES = {408, 425, 429}


class RemoteStoreClient:
    """Applies one queued operation to the remote store.

    Implementations must be idempotent by ``entry_id``: applying the same id
    twice leaves the remote store as if it was applied once. Failures are
    reported as ``RetryableRemoteError`` or ``PermanentRemoteError``.
    """

    def apply(self, entry_id: str, op_type: OperationType, payload: Dict[str, Any], user_id: str) -> None:
        raise NotImplementedError


class HttpRemoteStoreClient(RemoteStoreClient):
    """Writes progress and tag changes to the REST backend.

    Every request carries ``Idempotency-Key: <entry_id>`` so the backend can
    drop replays. Retrying is left to the queue; this client never sleeps.
    """

    def __init__(self, base_url: Optional[str] = None, api_token: Optional[str] = None,
                 timeout: float = settings.REMOTE_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.base_url = (base_url or settings.REMOTE_BASE_URL or "").rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        token = api_token or settings.REMOTE_API_TOKEN
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def apply(self, entry_id: str, op_type: OperationType, payload: Dict[str, Any], user_id: str) -> None:
        op_type = OperationType(op_type)
        item_path = f"/users/{quote(user_id, safe='')}/progress/{quote(payload['itemId'], safe='')}"

        if op_type == OperationType.UPDATE_PROGRESS:
            data = payload.get("data")
            if data is None:
                data = {k: v for k, v in payload.items() if k not in ("itemId", "userId")}
            self._request("PUT", item_path, entry_id, json={"merge": True, "data": data})
        elif op_type == OperationType.ADD_TAG:
            body = {"tagId": payload.get("tagId") or payload.get("tag")}
            if payload.get("tagName"):
                body["tagName"] = payload["tagName"]
            self._request("POST", f"{item_path}/tags", entry_id, json=body)
        elif op_type == OperationType.REMOVE_TAG:
            tag_id = payload.get("tagId") or payload.get("tag")
            self._request("DELETE", f"{item_path}/tags/{quote(tag_id, safe='')}", entry_id)
        else:
            raise PermanentRemoteError(f"Unknown operation type: {op_type}")

        logger.info(f"Applied {op_type.value} {entry_id} remotely", extra={"entry_id": entry_id})

    def _request(self, method: str, endpoint: str, entry_id: str, json: Optional[Dict[str, Any]] = None) -> None:
        """Send one request and classify the outcome."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json,
                headers={"Idempotency-Key": entry_id},
                timeout=self.timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise RetryableRemoteError(f"{method} {endpoint} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PermanentRemoteError(f"{method} {endpoint} could not be sent: {e}") from e

        status = response.status_code
        if status < 400:
            return

        detail = (response.text or "")[:200]
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            logger.warning(f"Remote store error {status} for {entry_id}")
            raise RetryableRemoteError(f"{method} {endpoint} returned {status}: {detail}")

        raise PermanentRemoteError(f"{method} {endpoint} rejected with {status}: {detail}")

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from core.errors import (
    AuthError,
    NotFoundError,
    RateLimited,
    TaskStoreError,
    TransientNetworkError,
    ValidationError,
)
from .rate_limiter import RateLimiter

logger = logging.getLogger("tasksync.remote")

OP_CURRENT_USER = "me"
OP_BOARD_SCHEMA = "board.schema"
OP_LIST_ITEMS = "items.list"
OP_CREATE_ITEM = "item.create"
OP_UPDATE_ITEM = "item.update"
OP_DELETE_ITEM = "item.delete"
OP_MOVE_ITEM = "item.move_to_group"
OP_CREATE_UPDATE = "item.add_update"

# Relative cost of each operation against the client-side budget.
OPERATION_COST = {
    OP_CURRENT_USER: 1,
    OP_BOARD_SCHEMA: 5,
    OP_LIST_ITEMS: 10,
    OP_CREATE_ITEM: 2,
    OP_UPDATE_ITEM: 2,
    OP_DELETE_ITEM: 1,
    OP_MOVE_ITEM: 1,
    OP_CREATE_UPDATE: 1,
}

DEFAULT_PAGE_SIZE = 100


@dataclass
class RemoteResult:
    """Uniform envelope returned for every successful call."""

    success: bool
    operation: str
    data: Any = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "operation": self.operation, "data": self.data, "timestamp": self.timestamp}


class RemoteApiClient:
    """Authenticated, rate-limited access to the remote work-tracking API.

    Every logical operation is one POST of ``{"operation", "payload"}`` to the
    endpoint. Calls are refused until :meth:`verify_credentials` has passed.
    Rate limits (HTTP 429 or rate-limit errors in the body), timeouts,
    connection failures and 5xx responses are retried with exponential
    backoff up to ``max_attempts`` total attempts; a server resume hint
    replaces the computed delay. Everything else is raised at once.
    """

    def __init__(
        self,
        endpoint: str,
        session: Optional[requests.Session],
        token_provider: Callable[[], Optional[str]],
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.1,
    ) -> None:
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.token_provider = token_provider
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.jitter = jitter
        self.current_user: Optional[Dict[str, Any]] = None
        self._verified = False

    @property
    def authenticated(self) -> bool:
        return self._verified

    def reset_auth(self) -> None:
        self._verified = False
        self.current_user = None

    def verify_credentials(self) -> Dict[str, Any]:
        """Capability check: the credential must exist and be accepted."""
        self.reset_auth()
        result = self._execute(OP_CURRENT_USER, {})
        self.current_user = result.data if isinstance(result.data, dict) else {}
        self._verified = True
        logger.info("remote credential verified for %s", self.current_user.get("name") or self.current_user.get("id") or "?")
        return self.current_user

    def probe(self, board_id: str) -> Dict[str, Any]:
        """Credential and board check that leaves the authentication state alone."""
        user = self._execute(OP_CURRENT_USER, {}).data or {}
        schema = self._execute(OP_BOARD_SCHEMA, {"board_id": board_id}).data or {}
        return {"user": user, "schema": schema}

    def request(self, operation: str, payload: Optional[Dict[str, Any]] = None) -> RemoteResult:
        if not self._verified:
            raise AuthError("Remote API not authenticated; capability check has not succeeded")
        return self._execute(operation, payload or {})

    # --- operations ---

    def get_current_user(self) -> Dict[str, Any]:
        return self.request(OP_CURRENT_USER).data or {}

    def get_board_schema(self, board_id: str) -> Dict[str, Any]:
        data = self.request(OP_BOARD_SCHEMA, {"board_id": board_id}).data or {}
        return {"columns": list(data.get("columns") or []), "groups": list(data.get("groups") or [])}

    def list_items(self, board_id: str, limit: int = DEFAULT_PAGE_SIZE) -> List[Dict[str, Any]]:
        """All items of a board, following the pagination cursor."""
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            payload: Dict[str, Any] = {"board_id": board_id, "limit": limit}
            if cursor:
                payload["cursor"] = cursor
            data = self.request(OP_LIST_ITEMS, payload).data or {}
            items.extend(data.get("items") or [])
            cursor = data.get("cursor")
            if not cursor:
                return items

    def create_item(
        self, board_id: str, name: str, columns: Dict[str, str], group_id: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {"board_id": board_id, "name": name, "column_values": columns}
        if group_id:
            payload["group_id"] = group_id
        return self.request(OP_CREATE_ITEM, payload).data or {}

    def update_item(self, board_id: str, item_id: str, columns: Dict[str, str]) -> Dict[str, Any]:
        payload = {"board_id": board_id, "item_id": item_id, "column_values": columns}
        return self.request(OP_UPDATE_ITEM, payload).data or {}

    def delete_item(self, item_id: str) -> Dict[str, Any]:
        return self.request(OP_DELETE_ITEM, {"item_id": item_id}).data or {}

    def move_item_to_group(self, item_id: str, group_id: str) -> Dict[str, Any]:
        return self.request(OP_MOVE_ITEM, {"item_id": item_id, "group_id": group_id}).data or {}

    def create_update(self, item_id: str, body: str) -> Dict[str, Any]:
        return self.request(OP_CREATE_UPDATE, {"item_id": item_id, "body": body}).data or {}

    # --- transport ---

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            raise AuthError("Remote API credential missing")
        return {"Authorization": token, "Content-Type": "application/json"}

    def _execute(self, operation: str, payload: Dict[str, Any]) -> RemoteResult:
        headers = self._headers()
        cost = OPERATION_COST.get(operation, 1)
        attempt = 0
        while True:
            attempt += 1
            # client-side rejection propagates as-is; it already carries resume_at
            self.rate_limiter.acquire(cost)
            try:
                return self._send(operation, payload, headers)
            except (TransientNetworkError, RateLimited) as exc:
                failure = exc
            finally:
                self.rate_limiter.release()
            failure.attempts = attempt
            if attempt >= self.max_attempts:
                logger.warning("%s failed after %d attempts: %s", operation, attempt, failure)
                raise failure
            # a server resume hint is honoured exactly, without jitter
            hinted = isinstance(failure, RateLimited) and failure.retry_after is not None
            delay = failure.retry_after if hinted else self._backoff_delay(attempt)
            logger.debug("%s attempt %d failed (%s); retrying in %.2fs", operation, attempt, failure, delay)
            self._sleep(delay, jitter=not hinted)

    def _backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def _send(self, operation: str, payload: Dict[str, Any], headers: Dict[str, str]) -> RemoteResult:
        try:
            response = self.session.post(
                self.endpoint,
                json={"operation": operation, "payload": payload},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise TransientNetworkError(f"{operation}: request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(f"{operation}: network error: {exc}") from exc

        response_headers = getattr(response, "headers", None) or {}
        self.rate_limiter.update(response_headers)
        status = response.status_code
        if status == 429:
            raise RateLimited(
                f"{operation}: remote rate limit (HTTP 429)", retry_after=self._resume_hint(response, response_headers)
            )
        if status >= 500:
            raise TransientNetworkError(f"{operation}: remote error HTTP {status}")
        if status in (401, 403):
            self.reset_auth()
            raise AuthError(f"{operation}: HTTP {status}")
        if status == 404:
            raise NotFoundError(f"{operation}: HTTP 404")
        if status >= 400:
            raise ValidationError(f"{operation}: rejected with HTTP {status}: {getattr(response, 'text', '')}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ValidationError(f"{operation}: malformed response body") from exc
        if not isinstance(body, dict):
            raise ValidationError(f"{operation}: malformed response body")
        errors = body.get("errors")
        if errors:
            raise self._classify_errors(operation, errors, body)
        return RemoteResult(success=True, operation=operation, data=body.get("data"))

    @staticmethod
    def _resume_hint(response: Any, headers: Dict[str, Any]) -> Optional[float]:
        raw = headers.get("Retry-After") or headers.get("retry-after")
        if raw is None:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                raw = body.get("retry_in_seconds")
        try:
            return float(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    def _classify_errors(self, operation: str, errors: Any, body: Dict[str, Any]) -> TaskStoreError:
        message = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
        if self._looks_like_rate_limit(errors):
            hint = body.get("retry_in_seconds")
            try:
                retry_after = float(hint) if hint is not None else None
            except (TypeError, ValueError):
                retry_after = None
            return RateLimited(f"{operation}: {message}", retry_after=retry_after)
        lowered = message.lower()
        if any(key in lowered for key in ("unauthorized", "forbidden", "not authenticated", "invalid token")):
            self.reset_auth()
            return AuthError(f"{operation}: {message}")
        if "not found" in lowered:
            return NotFoundError(f"{operation}: {message}")
        return ValidationError(f"{operation}: {message}")

    def _sleep(self, delay: float, jitter: bool = True) -> None:
        extra = random.uniform(0, delay * self.jitter) if jitter else 0.0
        time.sleep(delay + extra)

    @staticmethod
    def _looks_like_rate_limit(errors: Any) -> bool:
        if not errors:
            return False
        for err in errors:
            if not isinstance(err, dict):
                continue
            code = str(err.get("code", "")).lower()
            message = str(err.get("message", "")).lower()
            if code in ("rate_limited", "complexity_budget_exhausted") or "rate limit" in message:
                return True
        return False

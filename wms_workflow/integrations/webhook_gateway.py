"""Outbound webhook gateway used by the ``webhook`` rule action.

One POST per call, no retry: the action may fire again on event
re-delivery, and receivers are expected to dedupe on ``X-Event-Id``.

Provider constants:
  timeout = WEBHOOK_TIMEOUT_SECONDS (default 10 s)
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10


class WebhookResult:
    """Typed result of one webhook delivery.

    Never raises; check ``.ok``.
    """

    __slots__ = ("ok", "status_code", "error", "duration_ms", "payload_hash")

    def __init__(
        self,
        *,
        ok: bool,
        status_code: int | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash

    def to_log_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "payload_hash": self.payload_hash,
        }


class WebhookGateway:
    def __init__(self, session: requests.Session | None = None, timeout: float = _DEFAULT_TIMEOUT) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    @staticmethod
    def _compute_payload_hash(body: Any) -> str | None:
        if body is None:
            return None
        try:
            raw = json.dumps(body, sort_keys=True, default=str).encode()
            return hashlib.sha256(raw).hexdigest()[:16]
        except (TypeError, ValueError):
            return None

    def post(self, url: str, body: Any, headers: dict[str, str] | None = None,
             event_id: str | None = None) -> WebhookResult:
        """POST ``body`` as JSON to ``url``."""
        payload_hash = self._compute_payload_hash(body)
        send_headers = {"Content-Type": "application/json"}
        if event_id:
            send_headers["X-Event-Id"] = event_id
        send_headers.update(headers or {})

        t0 = time.perf_counter()
        try:
            resp = self.session.post(url, json=body, headers=send_headers, timeout=self.timeout)
        except requests.Timeout:
            logger.warning("Webhook timed out after %ss url=%s", self.timeout, url)
            return WebhookResult(ok=False, status_code=None,
                                 error=f"Request timed out after {self.timeout}s",
                                 duration_ms=int((time.perf_counter() - t0) * 1000),
                                 payload_hash=payload_hash)
        except requests.RequestException as exc:
            logger.warning("Webhook network error url=%s error=%s", url, exc)
            return WebhookResult(ok=False, status_code=None, error=str(exc)[:500],
                                 duration_ms=int((time.perf_counter() - t0) * 1000),
                                 payload_hash=payload_hash)

        duration_ms = int((time.perf_counter() - t0) * 1000)
        if resp.ok:
            return WebhookResult(ok=True, status_code=resp.status_code, error=None,
                                 duration_ms=duration_ms, payload_hash=payload_hash)

        logger.warning("Webhook rejected status=%d url=%s", resp.status_code, url)
        return WebhookResult(ok=False, status_code=resp.status_code,
                             error=f"HTTP {resp.status_code}: {resp.text[:500]}",
                             duration_ms=duration_ms, payload_hash=payload_hash)

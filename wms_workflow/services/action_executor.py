"""
Action Executor: registry dispatch of rule actions with bounded run time.

Architecture:
    - ActionRegistry: action type string → (handler, validator).  New action
      types are added by registering, never by touching the engine.
    - ActionExecutor: runs one ``{type, params}`` descriptor and returns an
      ``ActionResult``.  Never raises.

Handlers are plain functions ``handler(params, ctx) -> dict | None``.
Validators are ``validator(params) -> {param_name: error}``; the rule store
calls them on save so unknown types and missing params never reach runtime.

Execution modes (``ACTION_EXECUTION_MODE``):
    - ``pool``:   handler runs on a bounded thread pool inside a fresh app
                  context; ``ACTION_TIMEOUT_SECONDS`` caps the wait and a hung
                  handler is abandoned and recorded as a timeout.  Actions
                  chained from a pool thread (sync dispatch) run inline on it.
    - ``inline``: handler runs in the caller's thread and app context (tests).

Usage:
    registry = ActionRegistry()

    @registry.action_handler("create_notification", validator=_validate_notification)
    def create_notification(params, ctx):
        ...
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable

from flask import has_app_context

from wms_workflow.core.exceptions import ConfigurationError
from wms_workflow.models import db

logger = logging.getLogger(__name__)

ActionHandler = Callable[[dict, "ActionContext"], Any]
ActionValidator = Callable[[dict], dict]

_worker = threading.local()


# ═══════════════════════════════════════════════════════════════════════════
#  Value objects
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ActionContext:
    """What a handler gets to see besides its own params."""
    event: Any
    engine: Any
    rule_id: int | None = None
    workflow_id: int | None = None
    depth: int = 0

    def nested(self) -> "ActionContext":
        return ActionContext(event=self.event, engine=self.engine, rule_id=self.rule_id,
                             workflow_id=self.workflow_id, depth=self.depth + 1)


@dataclass
class ActionResult:
    type: str
    ok: bool
    error: str | None = None
    duration_ms: int = 0
    output: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {"type": self.type, "status": "success" if self.ok else "failed",
             "duration_ms": self.duration_ms}
        if self.error:
            d["error"] = self.error
        if self.output:
            d["output"] = self.output
        return d


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════

class ActionRegistry:
    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}
        self._validators: dict[str, ActionValidator] = {}

    def register(self, action_type: str, handler: ActionHandler,
                 validator: ActionValidator | None = None) -> None:
        self._handlers[action_type] = handler
        if validator is not None:
            self._validators[action_type] = validator
        else:
            self._validators.pop(action_type, None)

    def action_handler(self, action_type: str, validator: ActionValidator | None = None):
        """Decorator form of ``register``."""
        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register(action_type, fn, validator)
            return fn
        return decorator

    def get(self, action_type: str) -> ActionHandler | None:
        return self._handlers.get(action_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def copy(self) -> "ActionRegistry":
        clone = ActionRegistry()
        clone._handlers = dict(self._handlers)
        clone._validators = dict(self._validators)
        return clone

    def collect_errors(self, descriptor, path: str = "actions[0]") -> dict[str, str]:
        """Field-level errors for one descriptor, keyed by JSON path."""
        if not isinstance(descriptor, dict):
            return {path: "action must be an object with type and params"}
        action_type = descriptor.get("type")
        if not isinstance(action_type, str) or action_type not in self._handlers:
            return {f"{path}.type": f"unknown action type {action_type!r}; "
                                    f"registered: {', '.join(self.types())}"}
        params = descriptor.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return {f"{path}.params": "params must be an object"}
        validator = self._validators.get(action_type)
        if validator is None:
            return {}
        return {f"{path}.params.{key}": msg for key, msg in (validator(params) or {}).items()}

    def validate(self, descriptor, path: str = "actions[0]") -> None:
        errors = self.collect_errors(descriptor, path)
        if errors:
            raise ConfigurationError("Invalid action", details=errors)


# ═══════════════════════════════════════════════════════════════════════════
#  Executor
# ═══════════════════════════════════════════════════════════════════════════

class ActionExecutor:
    """Runs action descriptors through a registry.  ``run`` never raises."""

    def __init__(self, registry: ActionRegistry, app=None, *, mode: str = "pool",
                 timeout: float = 10.0, max_workers: int = 8):
        self.registry = registry
        self.app = app
        self.mode = mode
        self.timeout = timeout
        self._pool = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wms-action")
            if mode == "pool" else None
        )

    def _call(self, handler: ActionHandler, params: dict, ctx: ActionContext):
        _worker.active = True
        try:
            if self.app is None:
                return handler(params, ctx)
            with self.app.app_context():
                return handler(params, ctx)
        finally:
            _worker.active = False

    @staticmethod
    def on_worker_thread() -> bool:
        """True while a pooled handler runs on the current thread."""
        return getattr(_worker, "active", False)

    def run(self, descriptor: dict, ctx: ActionContext) -> ActionResult:
        action_type = (descriptor or {}).get("type") or "<missing>"
        if not isinstance(action_type, str):
            action_type = repr(action_type)
        params = (descriptor or {}).get("params") or {}
        handler = self.registry.get(action_type)
        if handler is None:
            return ActionResult(type=action_type, ok=False,
                                error=f"unknown action type {action_type!r}")

        log_extra = {"action_type": action_type, "rule_id": ctx.rule_id,
                     "event_id": getattr(ctx.event, "id", None)}
        # a handler already on a pool thread that publishes synchronously
        # must not wait on the same pool
        pooled = self._pool is not None and ctx.depth == 0 and not self.on_worker_thread()
        t0 = time.monotonic()
        try:
            if pooled:
                future = self._pool.submit(self._call, handler, params, ctx)
                try:
                    output = future.result(timeout=self.timeout)
                except FutureTimeout:
                    future.cancel()
                    logger.warning("Action %s abandoned after %ss", action_type, self.timeout,
                                   extra=log_extra)
                    return ActionResult(type=action_type, ok=False,
                                        error=f"timeout after {self.timeout:g}s",
                                        duration_ms=int((time.monotonic() - t0) * 1000))
            else:
                # nested, re-entrant and inline runs stay in the caller
                output = handler(params, ctx)
        except Exception as exc:
            duration_ms = int((time.monotonic() - t0) * 1000)
            if not pooled and has_app_context():
                # handler shared the caller's session
                db.session.rollback()
            logger.warning("Action %s failed: %s", action_type, exc, extra=log_extra)
            return ActionResult(type=action_type, ok=False, error=str(exc)[:1000],
                                duration_ms=duration_ms)

        duration_ms = int((time.monotonic() - t0) * 1000)
        if not pooled and duration_ms > self.timeout * 1000:
            logger.warning("Action %s overran its %ss budget (%dms)", action_type,
                           self.timeout, duration_ms, extra=log_extra)
        logger.debug("Action %s ok", action_type, extra={**log_extra, "duration_ms": duration_ms})
        return ActionResult(type=action_type, ok=True, duration_ms=duration_ms,
                            output=output if isinstance(output, dict) else {})

    def shutdown(self, wait: bool = False) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait, cancel_futures=True)

"""
Built-in rule actions.

Every handler has the signature ``handler(params, ctx) -> dict | None`` and
reaches its collaborators through ``ctx.engine`` (document gateway, approval
services, webhook gateway).  Raising marks the action failed; the executor
records the message and the rule's other actions still run.

Registered types:
    - create_notification    {title?, body?, recipientRole | recipientId, notificationType?}
    - change_status          {targetStatus}
    - send_email             {templateCode, to, variables?}
    - webhook                {url, headers?, body?}
    - submit_for_approval    {amount? | amountField?, documentType?}
    - create_parallel_approval {approverIds, mode?, level?, slaHours?}
    - conditional_branch     {condition, trueActions?, falseActions?}

Side-effect idempotency: notifications dedupe on a fingerprint that includes
the rule and event ids; approval submissions treat an already-open track for
the document as success.
"""

from __future__ import annotations

import logging
from typing import Any

from wms_workflow.core.exceptions import ActionError, ConfigurationError, StateConflictError
from wms_workflow.models.approval import GROUP_MODES
from wms_workflow.services.action_executor import ActionContext, ActionRegistry
from wms_workflow.services.condition_evaluator import evaluate, parse_condition, resolve_path, UNDEFINED
from wms_workflow.services.email_service import EmailService
from wms_workflow.services.notification import NotificationService

logger = logging.getLogger(__name__)

MAX_BRANCH_DEPTH = 5


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


# ═══════════════════════════════════════════════════════════════════════════
#  create_notification
# ═══════════════════════════════════════════════════════════════════════════

def _validate_notification(params: dict) -> dict:
    if not params.get("recipientRole") and not params.get("recipientId"):
        return {"recipientRole": "recipientRole or recipientId is required"}
    return {}


def create_notification(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    created = NotificationService.create(
        title=params.get("title") or f"{event.entity_type} {event.action}".strip(),
        body=params.get("body") or "",
        recipient_id=params.get("recipientId"),
        recipient_role=params.get("recipientRole"),
        notification_type=params.get("notificationType") or "workflow",
        reference_table=params.get("referenceTable") or event.entity_type,
        reference_id=event.entity_id,
        dedupe_key=f"rule:{ctx.rule_id}:event:{event.id}",
    )
    logger.info("create_notification: %d notification(s) for %s", len(created),
                params.get("recipientId") or params.get("recipientRole"),
                extra={"rule_id": ctx.rule_id, "event_id": event.id})
    return {"created": len(created)}


# ═══════════════════════════════════════════════════════════════════════════
#  change_status
# ═══════════════════════════════════════════════════════════════════════════

def _validate_change_status(params: dict) -> dict:
    if not params.get("targetStatus"):
        return {"targetStatus": "targetStatus is required"}
    return {}


def change_status(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    if not event.entity_type or not event.entity_id:
        raise ActionError("change_status", "event carries no document reference")
    changed = ctx.engine.documents.set_status(event.entity_type, event.entity_id, params["targetStatus"])
    return {"changed": changed, "status": params["targetStatus"]}


# ═══════════════════════════════════════════════════════════════════════════
#  send_email
# ═══════════════════════════════════════════════════════════════════════════

def _validate_send_email(params: dict) -> dict:
    errors = {}
    code = params.get("templateCode")
    if not code:
        errors["templateCode"] = "templateCode is required"
    elif EmailService.get_template(code) is None:
        errors["templateCode"] = f"unknown template {code!r}; available: {', '.join(EmailService.template_names())}"
    if not params.get("to"):
        errors["to"] = "to is required (address or role:<role>)"
    return errors


def send_email(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    variables: dict[str, Any] = {
        **(event.payload or {}),
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "action": event.action,
        "timestamp": event.timestamp,
        **(params.get("variables") or {}),
    }
    logs = EmailService.send_from_template(
        to=params["to"],
        template_code=params["templateCode"],
        variables=variables,
        rule_id=ctx.rule_id,
        event_id=event.id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
    )
    failed = [log for log in logs if log.status == "failed"]
    if failed:
        raise ActionError("send_email", f"{len(failed)} of {len(logs)} email(s) failed: {failed[0].error_message}")
    return {"sent": len(logs)}


# ═══════════════════════════════════════════════════════════════════════════
#  webhook
# ═══════════════════════════════════════════════════════════════════════════

def _validate_webhook(params: dict) -> dict:
    url = params.get("url") or ""
    if not url.startswith(("http://", "https://")):
        return {"url": "url must be an http(s) URL"}
    if params.get("headers") is not None and not isinstance(params["headers"], dict):
        return {"headers": "headers must be an object"}
    return {}


def webhook(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    body = params.get("body")
    if body is None:
        body = event.to_dict()
    result = ctx.engine.webhooks.post(params["url"], body, headers=params.get("headers"), event_id=event.id)
    if not result.ok:
        raise ActionError("webhook", result.error or "delivery failed")
    return result.to_log_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  submit_for_approval
# ═══════════════════════════════════════════════════════════════════════════

def _validate_submit(params: dict) -> dict:
    if "amount" in params and not _is_number(params["amount"]):
        return {"amount": "amount must be numeric"}
    return {}


def submit_for_approval(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    if "amount" in params:
        amount = float(params["amount"])
    else:
        raw = resolve_path(event.to_context(), params.get("amountField") or "payload.amount")
        if raw is UNDEFINED or not _is_number(raw):
            raise ActionError("submit_for_approval", "no numeric amount in event")
        amount = float(raw)

    document_type = params.get("documentType") or event.entity_type
    try:
        return ctx.engine.approvals.submit_for_approval(
            document_type, event.entity_id, amount, event.performed_by_id,
        )
    except StateConflictError as exc:
        logger.info("submit_for_approval skipped for %s/%s: %s", document_type, event.entity_id, exc,
                    extra={"document_type": document_type, "document_id": event.entity_id})
        return {"skipped": str(exc)}


# ═══════════════════════════════════════════════════════════════════════════
#  create_parallel_approval
# ═══════════════════════════════════════════════════════════════════════════

def _validate_parallel(params: dict) -> dict:
    errors = {}
    approvers = params.get("approverIds")
    if not isinstance(approvers, list) or not approvers:
        errors["approverIds"] = "at least one approver is required"
    if params.get("mode", "all") not in GROUP_MODES:
        errors["mode"] = "mode must be all or any"
    if "slaHours" in params and not _is_number(params["slaHours"]):
        errors["slaHours"] = "slaHours must be numeric"
    return errors


def create_parallel_approval(params: dict, ctx: ActionContext) -> dict:
    event = ctx.event
    document_type = params.get("documentType") or event.entity_type
    try:
        group = ctx.engine.parallel_approvals.create_group(
            document_type,
            event.entity_id,
            int(params.get("level", 1)),
            params.get("mode", "all"),
            params["approverIds"],
            created_by_id=event.performed_by_id,
            sla_hours=params.get("slaHours"),
        )
    except StateConflictError as exc:
        logger.info("create_parallel_approval skipped for %s/%s: %s", document_type, event.entity_id, exc,
                    extra={"document_type": document_type, "document_id": event.entity_id})
        return {"skipped": str(exc)}
    return {"group_id": group.id}


# ═══════════════════════════════════════════════════════════════════════════
#  Registration
# ═══════════════════════════════════════════════════════════════════════════

def register_builtin_actions(registry: ActionRegistry, *, max_depth: int = 5,
                             max_nodes: int = 200) -> ActionRegistry:
    """Populate ``registry`` with every built-in action type."""
    registry.register("create_notification", create_notification, _validate_notification)
    registry.register("change_status", change_status, _validate_change_status)
    registry.register("send_email", send_email, _validate_send_email)
    registry.register("webhook", webhook, _validate_webhook)
    registry.register("submit_for_approval", submit_for_approval, _validate_submit)
    registry.register("create_parallel_approval", create_parallel_approval, _validate_parallel)

    def _validate_branch(params: dict) -> dict:
        errors: dict[str, str] = {}
        if not params.get("condition"):
            errors["condition"] = "condition is required"
        else:
            try:
                parse_condition(params["condition"], max_depth=max_depth, max_nodes=max_nodes,
                                path="condition")
            except ConfigurationError as exc:
                errors.update(exc.details)
        for key in ("trueActions", "falseActions"):
            nested = params.get(key) or []
            if not isinstance(nested, list):
                errors[key] = f"{key} must be a list"
                continue
            for i, descriptor in enumerate(nested):
                errors.update(registry.collect_errors(descriptor, f"{key}[{i}]"))
        return errors

    @registry.action_handler("conditional_branch", validator=_validate_branch)
    def conditional_branch(params: dict, ctx: ActionContext) -> dict:
        if ctx.depth >= MAX_BRANCH_DEPTH:
            raise ActionError("conditional_branch", f"nested deeper than {MAX_BRANCH_DEPTH} branches")
        tree = parse_condition(params["condition"], max_depth=max_depth, max_nodes=max_nodes)
        outcome = evaluate(tree, ctx.event.to_context())
        branch = (params.get("trueActions") if outcome else params.get("falseActions")) or []
        results = [ctx.engine.executor.run(descriptor, ctx.nested()) for descriptor in branch]
        failed = [r for r in results if not r.ok]
        if failed:
            raise ActionError("conditional_branch",
                              "; ".join(f"{r.type}: {r.error}" for r in failed))
        return {"branch": "true" if outcome else "false", "actions": [r.to_dict() for r in results]}

    return registry

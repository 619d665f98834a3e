"""
Workflow Rule Administration Blueprint.

Routes:
  GET    /workflows                               – list workflows (?entity_type=&active=true)
  POST   /workflows                               – create workflow
  GET    /workflows/<wid>                         – workflow with its rules
  PUT    /workflows/<wid>                         – update workflow
  DELETE /workflows/<wid>                         – delete (deactivate when it has rules)
  GET    /workflows/<wid>/rules                   – list rules
  POST   /workflows/<wid>/rules                   – create rule
  GET    /workflows/<wid>/rules/<rid>             – rule detail
  PUT    /workflows/<wid>/rules/<rid>             – update rule
  DELETE /workflows/<wid>/rules/<rid>             – deactivate rule
  GET    /workflows/<wid>/rules/<rid>/logs        – execution logs (?page=&per_page=)
  POST   /workflows/<wid>/rules/<rid>/test        – dry-run against a sample event
  GET    /workflow-actions                        – registered action types
  GET    /workflow-templates                      – list templates (?category=)
  GET    /workflow-templates/<tid>                – template detail
  POST   /workflow-templates/<tid>/install        – create workflow + rules from a template
  POST   /events                                  – publish a domain event
  GET    /automation/jobs                         – scheduled jobs
  POST   /automation/jobs/<name>/run              – trigger a job now
  PATCH  /automation/jobs/<name>                  – pause / resume a job ({is_enabled})

Every rule write invalidates the rule cache through the RuleStore.
"""

from flask import Blueprint, jsonify, request

from wms_workflow.blueprints import current_user, register_error_handlers
from wms_workflow.core.exceptions import NotFoundError, ValidationError
from wms_workflow.services.engine_context import get_engine
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.services.scheduler_service import SchedulerService, get_registered_jobs
from wms_workflow.utils.helpers import get_pagination

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _store():
    return get_engine().store


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOWS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    include_inactive = request.args.get("active") != "true"
    workflows = _store().list_workflows(request.args.get("entity_type"), include_inactive=include_inactive)
    return jsonify([w.to_dict() for w in workflows])


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Body: { name, entity_type, description?, priority?, is_active? }"""
    workflow = _store().create_workflow(request.get_json(silent=True) or {})
    return jsonify(workflow.to_dict()), 201


@workflow_bp.route("/workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    return jsonify(_store().get_workflow(wid).to_dict(include_rules=True))


@workflow_bp.route("/workflows/<int:wid>", methods=["PUT"])
def update_workflow(wid):
    workflow = _store().update_workflow(wid, request.get_json(silent=True) or {})
    return jsonify(workflow.to_dict())


@workflow_bp.route("/workflows/<int:wid>", methods=["DELETE"])
def delete_workflow(wid):
    return jsonify(_store().delete_workflow(wid))


# ═════════════════════════════════════════════════════════════════════════════
# RULES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/<int:wid>/rules", methods=["GET"])
def list_rules(wid):
    include_inactive = request.args.get("active") != "true"
    return jsonify([r.to_dict() for r in _store().list_rules(wid, include_inactive=include_inactive)])


@workflow_bp.route("/workflows/<int:wid>/rules", methods=["POST"])
def create_rule(wid):
    """Create a rule.

    Body: {
        name, trigger_event, conditions?, actions?,
        stop_on_match?, sort_order?, is_active?, cron_expression?
    }
    camelCase keys (triggerEvent, stopOnMatch, ...) are accepted as well.
    """
    rule = _store().create_rule(wid, request.get_json(silent=True) or {})
    return jsonify(rule.to_dict()), 201


@workflow_bp.route("/workflows/<int:wid>/rules/<int:rid>", methods=["GET"])
def get_rule(wid, rid):
    return jsonify(_store().get_rule(rid, wid).to_dict())


@workflow_bp.route("/workflows/<int:wid>/rules/<int:rid>", methods=["PUT"])
def update_rule(wid, rid):
    rule = _store().update_rule(wid, rid, request.get_json(silent=True) or {})
    return jsonify(rule.to_dict())


@workflow_bp.route("/workflows/<int:wid>/rules/<int:rid>", methods=["DELETE"])
def delete_rule(wid, rid):
    rule = _store().delete_rule(wid, rid)
    return jsonify({"id": rule.id, "is_active": rule.is_active})


@workflow_bp.route("/workflows/<int:wid>/rules/<int:rid>/logs", methods=["GET"])
def list_rule_logs(wid, rid):
    page, per_page = get_pagination()
    return jsonify(_store().list_rule_logs(rid, page=page, per_page=per_page, workflow_id=wid))


@workflow_bp.route("/workflows/<int:wid>/rules/<int:rid>/test", methods=["POST"])
def test_rule(wid, rid):
    """Evaluate a rule against a sample event.  No actions run.

    Body: { event: {entityType?, entityId?, action?, payload?} } or the event itself.
    """
    engine = get_engine()
    engine.store.get_rule(rid, wid)
    data = request.get_json(silent=True) or {}
    sample = data.get("event", data)
    if not isinstance(sample, dict):
        raise ValidationError("Invalid sample event", details={"event": "event must be an object"})
    return jsonify(engine.rules.test_rule(rid, sample))


@workflow_bp.route("/workflow-actions", methods=["GET"])
def list_action_types():
    return jsonify({"types": get_engine().registry.types()})


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflow-templates", methods=["GET"])
def list_templates():
    templates = _store().list_templates(request.args.get("category"))
    return jsonify([t.to_dict() for t in templates])


@workflow_bp.route("/workflow-templates/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(_store().get_template(tid).to_dict())


@workflow_bp.route("/workflow-templates/<int:tid>/install", methods=["POST"])
def install_template(tid):
    """Create a workflow and its rules from a template."""
    workflow = _store().install_template(tid)
    return jsonify({"workflow_id": workflow.id, "workflow": workflow.to_dict(include_rules=True)}), 201


# ═════════════════════════════════════════════════════════════════════════════
# EVENTS & JOBS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/events", methods=["POST"])
def publish_event():
    """Body: { type, entityType, entityId, action?, payload?, id? }"""
    data = request.get_json(silent=True) or {}
    if not (data.get("type") or "").strip():
        raise ValidationError("Invalid event", details={"type": "type is required"})
    event = SystemEvent.from_dict({"performedById": current_user(), **data})
    published = get_engine().publish(event)
    if published is None:
        return jsonify({"error": "Event could not be published"}), 500
    return jsonify({"id": published.id, "type": published.type}), 202


@workflow_bp.route("/automation/jobs", methods=["GET"])
def list_jobs():
    return jsonify(SchedulerService.list_jobs())


@workflow_bp.route("/automation/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 200 if result["status"] == "success" else 500


@workflow_bp.route("/automation/jobs/<job_name>", methods=["PATCH"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("is_enabled"), bool):
        raise ValidationError("Invalid job update", details={"is_enabled": "is_enabled must be true or false"})
    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.toggle_job(job_name, data["is_enabled"])
    if job is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(job)

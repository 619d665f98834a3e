"""
Workflow Templates and Chain Rules: seed data.

Two idempotent seeds, both run from Flask CLI commands:
    - seed_workflow_templates(): installable WorkflowTemplate rows
      (``flask seed-workflow-templates``)
    - seed_chain_rules(): the document chain notifications as ordinary
      Workflow + WorkflowRule rows, one workflow per entity type
      (``flask seed-chain-rules``)

Both skip rows that already exist, flush, and leave the commit to the caller.
"""

import logging

from wms_workflow.models import db
from wms_workflow.models.workflow import Workflow, WorkflowRule, WorkflowTemplate

logger = logging.getLogger(__name__)

STATUS_CHANGED = "document:status_changed"


def _status_is(status):
    op = "in" if isinstance(status, list) else "eq"
    return {"operator": "AND", "conditions": [{"field": "payload.to", "op": op, "value": status}]}


def _notify(title, body, role, notification_type="chain_update"):
    return {"type": "create_notification", "params": {
        "title": title, "body": body, "recipientRole": role, "notificationType": notification_type,
    }}


# ═════════════════════════════════════════════════════════════════════════════
# Workflow templates
# ═════════════════════════════════════════════════════════════════════════════

def _get_default_templates() -> list[dict]:
    return [
        # ── inventory ────────────────────────────────────────────────────
        {
            "name": "Low Stock Email Alert",
            "description": "Email the warehouse supervisors when stock drops below its minimum level.",
            "category": "inventory",
            "entity_type": "*",
            "rules": [{
                "name": "Low Stock → Email Warehouse",
                "triggerEvent": "inventory:low_stock",
                "conditions": {"operator": "AND", "conditions": []},
                "actions": [{"type": "send_email", "params": {
                    "templateCode": "low_stock_alert", "to": "role:warehouse_supervisor",
                }}],
            }],
        },
        {
            "name": "Weekly Inventory Report",
            "description": "Weekly inventory summary notification to administrators.",
            "category": "inventory",
            "entity_type": "*",
            "rules": [{
                "name": "Weekly Inventory Summary (Sunday)",
                "triggerEvent": "scheduled:rule_triggered",
                "cronExpression": "0 8 * * 0",
                "conditions": {},
                "actions": [_notify("Weekly Inventory Summary",
                                    "Your weekly inventory report is ready for review.",
                                    "admin", "report")],
            }],
        },
        # ── material ─────────────────────────────────────────────────────
        {
            "name": "MR Approval Notifications",
            "description": "Notify relevant parties when a Material Request changes status.",
            "category": "material",
            "entity_type": "mrf",
            "rules": [
                {
                    "name": "MR Submitted → Notify Warehouse",
                    "triggerEvent": STATUS_CHANGED,
                    "conditions": _status_is(["submitted", "pending_approval"]),
                    "actions": [_notify("New Material Requisition",
                                        "A new MR has been submitted for review.", "warehouse_supervisor")],
                },
                {
                    "name": "MR Approved → Notify Engineer",
                    "triggerEvent": STATUS_CHANGED,
                    "conditions": _status_is("approved"),
                    "actions": [_notify("Material Requisition Approved",
                                        "Your MR has been approved.", "site_engineer")],
                },
            ],
        },
        {
            "name": "MRN Completion Notifications",
            "description": "Notify manager and warehouse when a Material Return is completed.",
            "category": "material",
            "entity_type": "mrv",
            "rules": [{
                "name": "MRN Completed → Notify",
                "triggerEvent": STATUS_CHANGED,
                "conditions": _status_is("completed"),
                "actions": [
                    _notify("MRN Completed", "Materials returned and stock updated.", "manager"),
                    _notify("MRN Completed", "Materials returned and stock updated.", "warehouse_supervisor"),
                ],
            }],
        },
        {
            "name": "GRN Conditional Routing",
            "description": "Send received GRNs to QC when inspection is required, otherwise straight "
                           "to the warehouse.",
            "category": "material",
            "entity_type": "mrrv",
            "rules": [{
                "name": "GRN Received → Conditional Route",
                "triggerEvent": STATUS_CHANGED,
                "conditions": _status_is("received"),
                "actions": [{"type": "conditional_branch", "params": {
                    "condition": {"field": "payload.rfimRequired", "op": "eq", "value": True},
                    "trueActions": [_notify("GRN Requires QC Inspection",
                                            "New GRN needs quality inspection.", "qc_officer")],
                    "falseActions": [_notify("GRN Ready for Storage",
                                             "New GRN ready for direct storage (no QC required).",
                                             "warehouse_supervisor")],
                }}],
            }],
        },
        # ── logistics ────────────────────────────────────────────────────
        {
            "name": "Shipment Tracking Notifications",
            "description": "Notify relevant teams when shipment status changes.",
            "category": "logistics",
            "entity_type": "shipment",
            "rules": [
                {
                    "name": "Shipment In Transit → Notify Logistics",
                    "triggerEvent": STATUS_CHANGED,
                    "conditions": _status_is("in_transit"),
                    "actions": [_notify("Shipment In Transit", "A shipment is now in transit.",
                                        "logistics_coordinator")],
                },
                {
                    "name": "Shipment Delivered → Notify Warehouse",
                    "triggerEvent": STATUS_CHANGED,
                    "conditions": _status_is("delivered"),
                    "actions": [_notify("Shipment Delivered",
                                        "A shipment has been delivered. Process the GRN.",
                                        "warehouse_supervisor")],
                },
            ],
        },
        {
            "name": "JO Approval Chain",
            "description": "Notify the transport supervisor when a Job Order is approved.",
            "category": "logistics",
            "entity_type": "jo",
            "rules": [{
                "name": "JO Approved → Notify Transport",
                "triggerEvent": STATUS_CHANGED,
                "conditions": _status_is("approved"),
                "actions": [_notify("Job Order Approved", "A Job Order needs scheduling.",
                                    "transport_supervisor")],
            }],
        },
        # ── asset ────────────────────────────────────────────────────────
        {
            "name": "Scrap Approval Notifications",
            "description": "Notify the scrap committee when scrap is approved for disposal.",
            "category": "asset",
            "entity_type": "scrap_item",
            "rules": [{
                "name": "Scrap Approved → Notify SSC",
                "triggerEvent": STATUS_CHANGED,
                "conditions": _status_is("approved"),
                "actions": [
                    _notify("Scrap Approved", "A scrap item needs SSC review.", "scrap_committee_member"),
                    _notify("Scrap Approved", "A scrap item has been approved for disposal.", "admin"),
                ],
            }],
        },
        # ── admin ────────────────────────────────────────────────────────
        {
            "name": "Daily Pending Review Reminder",
            "description": "Daily reminder about documents awaiting approval.",
            "category": "admin",
            "entity_type": "*",
            "rules": [{
                "name": "Daily Pending Reminder (8 AM)",
                "triggerEvent": "scheduled:rule_triggered",
                "cronExpression": "0 8 * * *",
                "conditions": {},
                "actions": [_notify("Daily Reminder: Pending Approvals",
                                    "You have documents awaiting your approval. Please review them.",
                                    "manager", "reminder")],
            }],
        },
    ]


def seed_workflow_templates():
    """
    Insert the default workflow templates.
    Safe to run multiple times: templates are matched by name and skipped when present.
    """
    created = 0
    for t in _get_default_templates():
        if WorkflowTemplate.query.filter_by(name=t["name"]).first():
            continue
        db.session.add(WorkflowTemplate(
            name=t["name"],
            description=t["description"],
            category=t["category"],
            source="system",
            template={
                "workflow": {"name": t["name"], "entityType": t["entity_type"]},
                "rules": t["rules"],
            },
        ))
        created += 1

    if created > 0:
        db.session.flush()
        logger.info("Seeded %d workflow templates", created)

    return created


# ═════════════════════════════════════════════════════════════════════════════
# Chain notification rules
# ═════════════════════════════════════════════════════════════════════════════

# (entity_type, rule name, payload.to status or statuses, recipient roles, title, body)
CHAIN_RULES = [
    ("mrrv", "GRN Stored → Notify Manager", "stored", ["manager", "project_manager"],
     "GRN Stored: Materials Available",
     "A GRN has been stored. Materials are now available in the warehouse."),
    ("mrrv", "GRN QC Approved → Notify Warehouse", "qc_approved", ["warehouse_supervisor"],
     "GRN QC Approved: Ready for Storage",
     "Quality inspection passed. Materials can now be stored."),
    ("mirv", "MI Approved → Notify Warehouse", "approved", ["warehouse_supervisor", "warehouse_clerk"],
     "MI Approved: Prepare Materials for Issue",
     "A Material Issue has been approved. Please prepare items for issuance."),
    ("mirv", "MI Issued → Notify Manager", "issued", ["manager", "project_manager"],
     "MI Issued: Materials Dispatched",
     "Materials have been issued and dispatched from the warehouse."),
    ("rfim", "QCI Completed → Notify Warehouse", "completed", ["warehouse_supervisor"],
     "QCI Completed: Inspection Result Available",
     "A Quality Control Inspection has been completed. Review the results."),
    ("shipment", "Shipment Delivered → Notify Receiving", "delivered",
     ["warehouse_supervisor", "warehouse_clerk"],
     "Shipment Delivered: Ready for Receiving",
     "A shipment has been delivered. Please process the goods receipt."),
    ("shipment", "Shipment In Transit → Notify Logistics", "in_transit", ["logistics_coordinator"],
     "Shipment In Transit",
     "A shipment is now in transit to the destination."),
    ("scrap_item", "Scrap Approved → Notify SSC", "approved", ["scrap_committee_member", "admin"],
     "Scrap Disposal Approved: Awaiting SSC Review",
     "A scrap item has been approved for disposal. SSC review is required."),
    ("mrv", "MRN Completed → Notify Manager & Warehouse", "completed", ["manager", "warehouse_supervisor"],
     "MRN Completed: Materials Returned",
     "A Material Return has been completed and stock has been updated."),
    ("jo", "JO Approved → Notify Transport", "approved", ["transport_supervisor"],
     "Job Order Approved: Schedule Required",
     "A Job Order has been approved. Please schedule the transport."),
    ("mrf", "MR Submitted → Notify Warehouse", ["submitted", "pending_approval"], ["warehouse_supervisor"],
     "Material Requisition Submitted",
     "A new Material Requisition has been submitted for review."),
    ("imsf", "IMSF Confirmed → Notify Warehouse", "confirmed", ["warehouse_supervisor"],
     "IMSF Confirmed: Inter-Warehouse Transfer Initiated",
     "An internal material shifting form has been confirmed."),
]


def seed_chain_rules():
    """
    Insert the chain notification rules, grouped into one
    "Chain Notifications: <entity>" workflow (priority 10) per entity type.

    An existing workflow is re-activated and reused; rules already present
    in it (matched by name) are skipped.

    Returns:
        dict: {"workflows": n, "rules": n} created in this run.
    """
    by_entity: dict[str, list] = {}
    for row in CHAIN_RULES:
        by_entity.setdefault(row[0], []).append(row)

    workflows_created = rules_created = 0
    for entity_type, rows in by_entity.items():
        name = f"Chain Notifications: {entity_type}"
        workflow = Workflow.query.filter_by(name=name, entity_type=entity_type).first()
        if workflow is None:
            workflow = Workflow(name=name, entity_type=entity_type, is_active=True, priority=10,
                                description=f"Chain notification rules for {entity_type}")
            db.session.add(workflow)
            db.session.flush()
            workflows_created += 1
        else:
            workflow.is_active = True

        for i, (_, rule_name, status, roles, title, body) in enumerate(rows):
            if WorkflowRule.query.filter_by(workflow_id=workflow.id, name=rule_name).first():
                continue
            db.session.add(WorkflowRule(
                workflow_id=workflow.id,
                name=rule_name,
                trigger_event=STATUS_CHANGED,
                conditions=_status_is(status),
                actions=[_notify(title, body, role) for role in roles],
                is_active=True,
                stop_on_match=False,
                sort_order=i * 10,
            ))
            rules_created += 1

    db.session.flush()
    if workflows_created or rules_created:
        logger.info("Seeded %d chain workflows, %d chain rules", workflows_created, rules_created)
    return {"workflows": workflows_created, "rules": rules_created}

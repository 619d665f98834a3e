"""
Periodic engine jobs run by SchedulerService.

    - sla_breach_sweep (5 min): flags pending approvals past their SLA due date
    - scheduled_rules (1 min): runs cron-triggered workflow rules that are due
"""

from __future__ import annotations

from typing import Any

from wms_workflow.services.scheduler_service import register_job


def _engine(app):
    return app.extensions["automation"]


@register_job("sla_breach_sweep", interval_seconds=300)
def sweep_sla_breaches(app) -> dict[str, Any]:
    """Publish sla:breached for overdue approval steps and parallel groups."""
    summary = _engine(app).sla_monitor.sweep()
    return {
        "steps_breached": summary["steps_breached"],
        "groups_breached": summary["groups_breached"],
    }


@register_job("scheduled_rules", interval_seconds=60)
def run_scheduled_rules(app) -> dict[str, Any]:
    """Run workflow rules whose cron schedule is due."""
    return _engine(app).scheduled_rules.process_due_rules()

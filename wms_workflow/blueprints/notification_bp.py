"""
Notification Blueprint: in-app notifications written by rule actions,
approval hand-offs and SLA breaches.

Routes:
  GET    /notifications               – current user's notifications (?unread=true&limit=&offset=)
  GET    /notifications/unread-count  – unread badge count
  PATCH  /notifications/<nid>/read    – mark one read
  POST   /notifications/mark-all-read – mark all read
"""

from flask import Blueprint, jsonify, request

from wms_workflow.blueprints import current_user, register_error_handlers
from wms_workflow.core.exceptions import NotFoundError, ValidationError
from wms_workflow.services.notification import NotificationService

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


def _recipient():
    user_id = current_user() or request.args.get("recipient_id")
    if not user_id:
        raise ValidationError("Recipient is required", details={"X-User": "header is required"})
    return user_id


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    limit = min(request.args.get("limit", 50, type=int) or 50, 200)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)
    items, total = NotificationService.list_for_recipient(
        _recipient(), unread_only=request.args.get("unread") == "true", limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(_recipient())})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        raise NotFoundError(resource="Notification", resource_id=nid)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    return jsonify({"marked": NotificationService.mark_all_read(_recipient())})

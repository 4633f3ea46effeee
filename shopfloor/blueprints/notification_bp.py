"""
Notification Blueprint.

Routes:
  GET    /notifications                 – my notifications (?unread_only=true&event_kind=)
  GET    /notifications/unread-count    – my unread count
  POST   /notifications/<nid>/read      – mark one read
  POST   /notifications/read-all        – mark all mine read
"""

from flask import Blueprint, jsonify, request

from shopfloor.blueprints import current_user_id
from shopfloor.core.exceptions import NotFoundError
from shopfloor.services.notification import NotificationService

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    user_id = current_user_id()
    items, total = NotificationService.list_for_recipient(
        user_id,
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        event_kind=request.args.get("event_kind") or None,
        limit=min(request.args.get("limit", 50, type=int), 200),
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(user_id),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_user_id())})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, recipient=current_user_id())
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=notification_id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_user_id())
    return jsonify({"marked_read": count})

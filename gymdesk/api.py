from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from flask import Flask, jsonify, request

from .app_api import AppAPI
from .config import AppConfig, load_config
from .database import create_database, initialize_database
from .exceptions import ValidationError
from .models import CHECK_IN_ALLOWED, CHECK_IN_ERROR, CHECK_IN_NOT_FOUND, CheckInResult

ERROR_STATUS = {
    "not_found": 404,
    "validation": 400,
    "conflict": 409,
    "transaction": 503,
    "data_integrity": 500,
}

MEMBER_FIELDS = ("name", "email", "phone", "birth_date", "membership_id", "photo")
MEMBERSHIP_FIELDS = ("name", "price", "duration_days", "features", "description")
ATTENDANCE_FIELDS = ("status", "attended", "date", "time")


def to_json(value: Any) -> Any:
    if isinstance(value, CheckInResult):
        payload = asdict(value)
        payload["allowed"] = value.allowed
        return payload
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    return value


def respond(result, success_status: int = 200):
    if result.success:
        return jsonify({"message": result.message, "data": to_json(result.data)}), success_status
    return jsonify({"error": result.message}), ERROR_STATUS.get(result.error_code, 500)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        raise ValidationError("No JSON data provided.")
    return data


def optional_json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    if not raw.isdigit():
        raise ValidationError(f"Invalid '{name}' parameter.")
    return int(raw)


def pick(data: dict, allowed) -> dict:
    return {key: data[key] for key in allowed if key in data}


def create_app(api: Optional[AppAPI] = None, config: Optional[AppConfig] = None) -> Flask:
    """
    Builds the JSON API. Without an explicit AppAPI the database named by the
    configuration is initialized and opened.
    """
    app = Flask(__name__)

    if api is None:
        config = config or load_config()
        try:
            initialize_database(config.db_file, seed_plans=config.seed_plans)
        except (OSError, RuntimeError) as e:
            app.logger.critical(f"Failed to initialize database: {e}")
        conn = create_database(config.db_file)
        if conn is None:
            app.logger.critical(f"Database at {config.db_file} is not available.")
        else:
            api = AppAPI(
                connection=conn,
                renewal_max_attempts=config.renewal_max_attempts,
                invoice_max_attempts=config.invoice_max_attempts,
            )
    app.config["GYMDESK_API"] = api

    @app.before_request
    def require_database():
        if api is None:
            return jsonify({"error": "Database service not available"}), 503
        return None

    @app.errorhandler(ValidationError)
    def handle_bad_request(e):
        app.logger.warning(f"Bad request to {request.path}: {e.message}")
        return jsonify({"error": e.message}), 400

    # Attendance gate
    @app.route("/api/check-in", methods=["POST"])
    def check_in():
        code = json_body().get("code")
        if not code or not str(code).strip():
            raise ValidationError("Missing required field: code")
        result = api.check_in(str(code))
        status = 200
        if result.outcome == CHECK_IN_NOT_FOUND:
            status = 404
        elif result.outcome == CHECK_IN_ERROR:
            status = 503
        elif result.outcome != CHECK_IN_ALLOWED:
            app.logger.info(f"Check-in denied: {result.outcome}")
        return jsonify(to_json(result)), status

    # Members
    @app.route("/api/members", methods=["GET"])
    def list_members():
        return respond(
            api.get_all_members(
                search=request.args.get("search"), status_filter=request.args.get("status")
            )
        )

    @app.route("/api/members", methods=["POST"])
    def create_member():
        data = json_body()
        return respond(
            api.add_member(
                name=data.get("name"),
                phone=data.get("phone"),
                birth_date=data.get("birth_date"),
                membership_id=data.get("membership_id"),
                email=data.get("email"),
                photo=data.get("photo"),
            ),
            201,
        )

    @app.route("/api/members/expiring", methods=["GET"])
    def expiring_members():
        return respond(api.get_expiring_members(int_arg("days")))

    @app.route("/api/members/refresh-statuses", methods=["POST"])
    def refresh_statuses():
        return respond(api.refresh_member_statuses())

    @app.route("/api/members/<member_id>", methods=["GET"])
    def get_member(member_id):
        return respond(api.get_member(member_id))

    @app.route("/api/members/<member_id>", methods=["PUT"])
    def update_member(member_id):
        return respond(api.update_member(member_id, **pick(json_body(), MEMBER_FIELDS)))

    @app.route("/api/members/<member_id>", methods=["DELETE"])
    def delete_member(member_id):
        return respond(api.delete_member(member_id))

    @app.route("/api/members/<member_id>/status", methods=["PATCH"])
    def update_member_status(member_id):
        status = json_body().get("status")
        if not status:
            raise ValidationError("Missing required field: status")
        return respond(api.update_member_status(member_id, status))

    @app.route("/api/members/<member_id>/renew", methods=["POST"])
    def renew_member(member_id):
        data = optional_json_body()
        return respond(api.renew_membership(member_id, data.get("membership_id")), 201)

    @app.route("/api/members/<member_id>/payments", methods=["GET"])
    def member_payments(member_id):
        return respond(api.get_member_payments(member_id))

    @app.route("/api/members/<member_id>/attendances", methods=["GET"])
    def member_attendances(member_id):
        return respond(api.get_member_attendances(member_id, limit=int_arg("limit")))

    @app.route("/api/portal/<code>", methods=["GET"])
    def portal(code):
        return respond(api.get_member_portal(code))

    # Membership plans
    @app.route("/api/memberships", methods=["GET"])
    def list_memberships():
        return respond(api.get_all_memberships())

    @app.route("/api/memberships", methods=["POST"])
    def create_membership():
        data = json_body()
        return respond(
            api.add_membership(
                name=data.get("name"),
                price=data.get("price"),
                duration_days=data.get("duration_days"),
                features=data.get("features"),
                description=data.get("description", ""),
            ),
            201,
        )

    @app.route("/api/memberships/<int:membership_id>", methods=["GET"])
    def get_membership(membership_id):
        return respond(api.get_membership(membership_id))

    @app.route("/api/memberships/<int:membership_id>", methods=["PUT"])
    def update_membership(membership_id):
        return respond(
            api.update_membership(membership_id, **pick(json_body(), MEMBERSHIP_FIELDS))
        )

    @app.route("/api/memberships/<int:membership_id>", methods=["DELETE"])
    def delete_membership(membership_id):
        return respond(api.delete_membership(membership_id))

    # Payments
    @app.route("/api/payments/recent", methods=["GET"])
    def recent_payments():
        return respond(api.get_recent_payments(int_arg("days", 30)))

    @app.route("/api/payments/<int:payment_id>", methods=["GET"])
    def get_payment(payment_id):
        return respond(api.get_payment(payment_id))

    # Attendance records
    @app.route("/api/attendances", methods=["GET"])
    def list_attendances():
        return respond(
            api.get_attendances(
                start=request.args.get("start"),
                end=request.args.get("end"),
                limit=int_arg("limit"),
            )
        )

    @app.route("/api/attendances/<int:attendance_id>", methods=["GET"])
    def get_attendance(attendance_id):
        return respond(api.get_attendance(attendance_id))

    @app.route("/api/attendances/<int:attendance_id>", methods=["PATCH"])
    def update_attendance(attendance_id):
        return respond(
            api.update_attendance(attendance_id, **pick(json_body(), ATTENDANCE_FIELDS))
        )

    @app.route("/api/attendances/<int:attendance_id>", methods=["DELETE"])
    def delete_attendance(attendance_id):
        return respond(api.delete_attendance(attendance_id))

    # Settings
    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        return respond(api.get_settings())

    @app.route("/api/settings", methods=["PUT"])
    def update_settings():
        return respond(api.update_settings(**json_body()))

    # Messages
    @app.route("/api/messages", methods=["GET"])
    def list_messages():
        return respond(
            api.get_messages(status=request.args.get("status"), type=request.args.get("type"))
        )

    @app.route("/api/messages", methods=["POST"])
    def create_message():
        data = json_body()
        return respond(
            api.create_message(
                data.get("type", "custom"), data.get("recipient"), data.get("content")
            ),
            201,
        )

    @app.route("/api/messages/bulk", methods=["POST"])
    def bulk_message():
        data = json_body()
        return respond(
            api.send_bulk_message(
                data.get("type", "custom"), data.get("recipients"), data.get("content")
            ),
            201,
        )

    @app.route("/api/messages/bulk-sent", methods=["POST"])
    def mark_messages_sent():
        return respond(api.mark_messages_sent(json_body().get("ids")))

    @app.route("/api/messages/bulk-delete", methods=["POST"])
    def delete_messages():
        return respond(api.delete_messages(json_body().get("ids")))

    @app.route("/api/messages/<int:message_id>", methods=["GET"])
    def get_message(message_id):
        return respond(api.get_message(message_id))

    @app.route("/api/messages/renewal-reminders", methods=["POST"])
    def renewal_reminders():
        data = optional_json_body()
        days = data.get("days")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int)):
            raise ValidationError("Invalid 'days' parameter.")
        return respond(api.create_renewal_reminders(days), 201)

    @app.route("/api/messages/birthday", methods=["POST"])
    def birthday_messages():
        return respond(api.create_birthday_messages(), 201)

    @app.route("/api/messages/<int:message_id>/sent", methods=["POST"])
    def mark_message_sent(message_id):
        return respond(api.mark_message_sent(message_id))

    @app.route("/api/messages/<int:message_id>", methods=["DELETE"])
    def delete_message(message_id):
        return respond(api.delete_message(message_id))

    # Reports
    @app.route("/api/stats/<report_name>", methods=["GET"])
    def get_report(report_name):
        return respond(api.get_report(report_name))

    return app

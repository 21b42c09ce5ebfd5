"""
Flask route handlers – UI events in, rendered workflow state out.
"""

import sys
import traceback
from datetime import datetime, timedelta

from flask import Response, jsonify, request

from clinicflow.config import (
    APP_CONFIG,
    DIAGNOSES,
    INSULIN_MEDS,
    MEDICATIONS,
    SPECIALIST_CLINICS,
    TOKEN_EXPIRY_HOURS,
)
from clinicflow.errors import (
    AccessDenied,
    AuthFailure,
    BackendUnavailableError,
    ClinicError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinicflow.workflow import ClinicWorkflow, DispenserView, PhysicianView, RegistrarView
from clinicflow.api.auth import (
    cleanup_expired_sessions,
    end_session,
    generate_token,
    sessions,
    token_required,
)

# most specific first
ERROR_STATUS = [
    (ConflictError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (BackendUnavailableError, 503),
    (AuthFailure, 401),
    (AccessDenied, 403),
]


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _session():
    return request.session_data["workflow"].session


def _view(view_cls):
    session = _session()
    if not isinstance(session.view, view_cls):
        raise AccessDenied(f"Not available to the {session.policy.role} role.")
    return session.view


def _ok(payload=None, status=200):
    session = _session()
    data = {
        "success": True,
        "state": session.view.state,
        "connected": session.connected,
        "notice": session.notice,
    }
    data.update(payload or {})
    return jsonify(data), status


def register_routes(app, store, assistant):
    """Register all API routes on the Flask *app*."""

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": f"Diabetes Clinic – {APP_CONFIG['branch_name']}",
            "version": "1.0.0",
            "status": "running",
            "backend": store.name,
            "endpoints": {
                "auth": "/api/auth/login",
                "session": "/api/session",
                "patients": "/api/patients",
                "chart": "/api/chart",
                "dispensary": "/api/dispensary",
                "archive": "/api/archive",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {
            "storage": store.connected,
            "assistant": assistant.can_summarize,
            "speech": assistant.can_speak,
        }
        return jsonify({
            "status": "healthy" if store.connected else "degraded",
            "checks": checks,
            "active_sessions": len(sessions),
        }), 200 if store.connected else 503

    @app.route("/api/catalog", methods=["GET"])
    def catalog():
        return jsonify({
            "diagnoses": DIAGNOSES,
            "medications": MEDICATIONS,
            "insulin_medications": sorted(INSULIN_MEDS),
            "specialist_clinics": SPECIALIST_CLINICS,
            "clinic": APP_CONFIG,
        })

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        data = request.json
        username = str(data.get("username", "")).strip()
        password = str(data.get("password", ""))
        if not username:
            return jsonify({"error": "username is required"}), 400

        cleanup_expired_sessions()
        workflow = ClinicWorkflow(store, assistant)
        session = workflow.login(username, password)
        token = generate_token(session.user)
        sessions[token] = {
            "workflow": workflow,
            "created_at": datetime.utcnow(),
            "last_activity": datetime.utcnow(),
        }

        return jsonify({
            "success": True,
            "token": token,
            "user": session.user.public_dict(),
            "policy": {
                "role": session.policy.role,
                "actions": sorted(session.policy.actions),
                "notes": session.policy.notes,
            },
            "session": session.render(),
            "expires_at": (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
        }), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        end_session(request.token)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    @app.route("/api/session", methods=["GET"])
    @token_required
    def get_session():
        return jsonify({"success": True, "session": _session().render()}), 200

    @app.route("/api/session/reload", methods=["POST"])
    @token_required
    def reload_session():
        session = _session()
        session.reload()
        return jsonify({"success": True, "session": session.render()}), 200

    # ── Registrar ────────────────────────────────────────────────────

    @app.route("/api/patients", methods=["GET"])
    @token_required
    def list_patients():
        view = _view(RegistrarView)
        _session().pump()
        return _ok({"patients": [p.to_dict() for p in view.patients_listing()]})

    @app.route("/api/patients", methods=["POST"])
    @token_required
    def register_patient():
        view = _view(RegistrarView)
        data = _body()
        patient = view.register_patient(
            name=data.get("name"),
            national_id=data.get("national_id"),
            age=data.get("age"),
            gender=data.get("gender"),
        )
        return _ok({"patient": patient.to_dict(), "card": view.card}, 201)

    @app.route("/api/patients/<patient_id>/print", methods=["POST"])
    @token_required
    def print_card(patient_id):
        view = _view(RegistrarView)
        view.reprint(patient_id)
        return _ok({"card": view.card})

    @app.route("/api/print/clear", methods=["POST"])
    @token_required
    def clear_print():
        _view(RegistrarView).clear_print()
        return _ok()

    @app.route("/api/staff/open", methods=["POST"])
    @token_required
    def open_staff():
        view = _view(RegistrarView)
        view.open_staff()
        return _ok({"staff": [u.public_dict() for u in view.staff()]})

    @app.route("/api/staff/close", methods=["POST"])
    @token_required
    def close_staff():
        _view(RegistrarView).close_staff()
        return _ok()

    @app.route("/api/staff", methods=["GET"])
    @token_required
    def list_staff():
        view = _view(RegistrarView)
        _session().pump()
        return _ok({"staff": [u.public_dict() for u in view.staff()]})

    @app.route("/api/staff", methods=["POST"])
    @token_required
    def add_staff():
        view = _view(RegistrarView)
        data = _body()
        user = view.add_staff(
            name=data.get("name"),
            username=data.get("username"),
            password=data.get("password"),
            role=data.get("role"),
        )
        return _ok({"user": user.public_dict()}, 201)

    @app.route("/api/staff/<user_id>", methods=["DELETE"])
    @token_required
    def remove_staff(user_id):
        _view(RegistrarView).remove_staff(user_id)
        return _ok()

    @app.route("/api/archive", methods=["GET"])
    @token_required
    def export_archive():
        filename, data = _view(RegistrarView).export_archive()
        return Response(
            data,
            mimetype="text/csv",
            headers={
                "Content-Type": "text/csv; charset=utf-8",
                "Content-Disposition": f'attachment; filename="{filename}"',
            },
        )

    # ── Physician ────────────────────────────────────────────────────

    @app.route("/api/chart/scan", methods=["POST"])
    @token_required
    def scan_patient():
        patient = _view(PhysicianView).scan(_body().get("raw", ""))
        return _ok({"patient": patient.to_dict()})

    @app.route("/api/chart/select", methods=["POST"])
    @token_required
    def select_patient():
        patient = _view(PhysicianView).select(str(_body().get("patient_id", "")))
        return _ok({"patient": patient.to_dict()})

    @app.route("/api/chart", methods=["GET"])
    @token_required
    def get_chart():
        view = _view(PhysicianView)
        return _ok({"chart": view.render()})

    @app.route("/api/chart/diagnosis", methods=["PUT"])
    @token_required
    def set_diagnosis():
        _view(PhysicianView).set_diagnosis(_body().get("diagnosis", ""))
        return _ok()

    @app.route("/api/chart/referral", methods=["PUT"])
    @token_required
    def set_referral():
        _view(PhysicianView).set_referral(_body().get("referral"))
        return _ok()

    @app.route("/api/chart/medications", methods=["POST"])
    @token_required
    def add_medication():
        view = _view(PhysicianView)
        data = _body()
        kwargs = {k: data[k] for k in ("units", "times_per_day", "duration_days") if k in data}
        item = view.add_medication(data.get("name", ""), med_type=data.get("type"), **kwargs)
        return _ok({
            "medication": item.to_dict(),
            "medications": [m.to_dict() for m in view.chart.medications],
        }, 201)

    @app.route("/api/chart/medications/<int:index>", methods=["DELETE"])
    @token_required
    def remove_medication(index):
        view = _view(PhysicianView)
        view.remove_medication(index)
        return _ok({"medications": [m.to_dict() for m in view.chart.medications]})

    @app.route("/api/chart/close", methods=["POST"])
    @token_required
    def close_chart():
        _view(PhysicianView).close_chart()
        return _ok()

    @app.route("/api/chart/submit", methods=["POST"])
    @token_required
    def submit_chart():
        visit = _view(PhysicianView).submit()
        return _ok({"visit": visit.to_dict()}, 201)

    @app.route("/api/chart/history", methods=["GET"])
    @token_required
    def chart_history():
        visits = _view(PhysicianView).patient_history()
        return _ok({"visits": [v.to_dict() for v in visits]})

    @app.route("/api/chart/summary", methods=["POST"])
    @token_required
    def chart_summary():
        summary = _view(PhysicianView).request_summary()
        return _ok({"summary": summary or "AI summary unavailable.", "available": summary is not None})

    @app.route("/api/chart/speech", methods=["POST"])
    @token_required
    def chart_speech():
        view = _view(PhysicianView)
        audio_path = view.toggle_speech()
        return _ok({"audio_path": audio_path, "playing": _session().assistant.playing})

    # ── Dispenser ────────────────────────────────────────────────────

    @app.route("/api/dispensary", methods=["GET"])
    @token_required
    def dispensary():
        return _ok(_view(DispenserView).render())

    @app.route("/api/dispensary/<visit_id>/dispense", methods=["POST"])
    @token_required
    def dispense(visit_id):
        changed = _view(DispenserView).dispense(visit_id)
        return _ok({"changed": changed})

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(ClinicError)
    def clinic_error(e):
        status = next((code for cls, code in ERROR_STATUS if isinstance(e, cls)), 400)
        body = {"success": False, "error": type(e).__name__, "message": str(e)}
        if isinstance(e, BackendUnavailableError):
            body["connected"] = False
        return jsonify(body), status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        print(f"[ERROR] Unhandled error: {e}", file=sys.stderr)
        traceback.print_exc()
        return jsonify({"error": "Internal server error", "message": str(e)}), 500

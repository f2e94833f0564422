"""Flask-powered admin portal and extension registration endpoint."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask import has_request_context
from flask_wtf.csrf import CSRFProtect

from .ad_client import ad_client
from .config import AppConfig, ensure_default_config, load_config
from .models import AdminPrincipal, DirectoryGroup, RegistrationStatus
from .registration import (
    DirectoryFactory,
    PortalError,
    RegistrationService,
)
from .storage import RegistrationStore


_TEMPLATE_FOLDER = Path(__file__).resolve().parent / "templates"
_AUTH_EXEMPT_ENDPOINTS = {"index", "login", "logout", "api_register", "static"}
_EXTENSION_API_PREFIX = "/api/extension/"

csrf = CSRFProtect()


def create_app(
    config_path: Optional[Path | str] = None,
    *,
    config: Optional[AppConfig] = None,
    directory_factory: DirectoryFactory = ad_client,
) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    if config is None:
        ensure_default_config(resolved_config_path)

    app = Flask(__name__, template_folder=str(_TEMPLATE_FOLDER))
    app.config["CONFIG_PATH"] = resolved_config_path
    app.config["APP_CONFIG"] = config
    app.config["DIRECTORY_FACTORY"] = directory_factory
    app.config["SECRET_KEY"] = os.environ.get("PORTAL_WEB_SECRET") or _load_app_config(app).web.secret_key
    csrf.init_app(app)

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        principal = AdminPrincipal.from_session(session.get("user"))
        g.principal = principal

        endpoint = request.endpoint or ""
        if endpoint.startswith("static") or endpoint in _AUTH_EXEMPT_ENDPOINTS:
            return None
        if principal is not None and principal.is_admin:
            return None

        session["post_login_redirect"] = request.full_path.rstrip("?") if request.method == "GET" else None
        return redirect(url_for("login"))

    @app.after_request
    def _extension_cors(response: Any) -> Any:
        if not request.path.startswith(_EXTENSION_API_PREFIX):
            return response
        origin = request.headers.get("Origin")
        allowed = _load_app_config(app).web.allowed_origins
        if origin and ("*" in allowed or origin in allowed):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Vary"] = "Origin"
        return response

    @app.context_processor
    def inject_globals() -> Dict[str, Any]:
        return {
            "current_user": g.get("principal"),
            "statuses": RegistrationStatus,
        }

    @app.route("/")
    def index() -> Any:
        if g.get("principal"):
            return redirect(url_for("admin_dashboard"))
        return redirect(url_for("login"))

    @app.route("/login", methods=["GET", "POST"])
    def login() -> Any:
        if g.get("principal"):
            return redirect(url_for("admin_dashboard"))

        if request.method == "GET":
            return render_template("login.html", username="", error=None)

        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        try:
            principal = _get_service(app).login(username, password)
        except PortalError as exc:
            app.logger.info("Login attempt for %s refused: %s", username or "<blank>", exc.message)
            return render_template("login.html", username=username, error=exc.message), exc.status_code

        destination = session.pop("post_login_redirect", None) or url_for("admin_dashboard")
        session.clear()
        session["user"] = principal.to_session()
        app.logger.info("Admin session started for %s", principal.username)
        return redirect(destination)

    @app.post("/logout")
    def logout() -> Any:
        session.clear()
        flash("You have been signed out.", "success")
        return redirect(url_for("login"))

    @app.get("/admin/dashboard")
    def admin_dashboard() -> Any:
        service = _get_service(app)
        raw_status = request.args.get("status", "").strip()
        status_filter: Optional[RegistrationStatus] = None
        if raw_status:
            try:
                status_filter = RegistrationStatus.parse(raw_status)
            except ValueError:
                flash(f"Unknown status filter '{raw_status}'.", "error")

        users = service.list_users_by_status(status_filter) if status_filter is not None else service.list_users()
        return render_template("dashboard.html", users=users, status_filter=status_filter)

    @app.get("/admin/users/<int:record_id>")
    def admin_user_detail(record_id: int) -> Any:
        return _render_user_detail(app, record_id)

    @app.post("/admin/users/<int:record_id>/register")
    def admin_register(record_id: int) -> Any:
        principal_name = request.form.get("ad_user_principal_name", "").strip()
        groups = request.form.getlist("groups")
        try:
            _get_service(app).register_user(record_id, principal_name, groups, actor=g.principal)
        except PortalError as exc:
            flash(exc.message, "error")
            return redirect(url_for("admin_user_detail", record_id=record_id))
        flash("User registered successfully", "success")
        return redirect(url_for("admin_dashboard"))

    @app.post("/admin/users/<int:record_id>/groups")
    def admin_update_groups(record_id: int) -> Any:
        service = _get_service(app)
        try:
            if "groups_to_add" in request.form or "groups_to_remove" in request.form:
                to_add = request.form.getlist("groups_to_add")
                to_remove = request.form.getlist("groups_to_remove")
            else:
                to_add, to_remove = _diff_group_selection(service, record_id, request.form.getlist("groups"))
            service.update_user_groups(record_id, to_add, to_remove, actor=g.principal)
        except PortalError as exc:
            flash(exc.message, "error")
            return redirect(url_for("admin_user_detail", record_id=record_id))
        flash("User groups updated successfully", "success")
        return redirect(url_for("admin_user_detail", record_id=record_id))

    @app.post("/admin/users/<int:record_id>/reset-password")
    def admin_reset_password(record_id: int) -> Any:
        try:
            password = _get_service(app).reset_user_password(record_id, actor=g.principal)
        except PortalError as exc:
            flash(exc.message, "error")
            return redirect(url_for("admin_user_detail", record_id=record_id))
        # The password is shown on this response only; it never goes into the session.
        response = app.make_response(_render_user_detail(app, record_id, new_password=password))
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.post("/admin/users/<int:record_id>/delete")
    def admin_delete(record_id: int) -> Any:
        try:
            _get_service(app).delete_user(record_id, actor=g.principal)
        except PortalError as exc:
            flash(exc.message, "error")
        else:
            flash("User deleted successfully", "success")
        return redirect(url_for("admin_dashboard"))

    @app.route("/api/extension/register", methods=["POST", "OPTIONS"])
    @csrf.exempt
    def api_register() -> Any:
        if request.method == "OPTIONS":
            return app.make_default_options_response()

        payload = request.get_json(silent=True)
        email = payload.get("email") if isinstance(payload, dict) else None
        if not isinstance(email, str) or not email.strip():
            return jsonify({"error": "Email is required"}), 400

        try:
            record = _get_service(app).create_pending_user(email)
        except PortalError as exc:
            return jsonify({"error": exc.message}), 400

        return jsonify({"message": "User registered successfully", "user": record.to_summary()})


def _render_user_detail(app: Flask, record_id: int, new_password: Optional[str] = None) -> Any:
    service = _get_service(app)
    try:
        detail = service.get_user_detail(record_id)
    except PortalError as exc:
        flash(exc.message, "error")
        return redirect(url_for("admin_dashboard"))

    available_groups = service.list_available_groups()
    return render_template(
        "user_detail.html",
        detail=detail,
        record=detail.record,
        available_groups=available_groups,
        new_password=new_password,
    )


def _diff_group_selection(
    service: RegistrationService, record_id: int, selected: List[str]
) -> tuple[List[str], List[str]]:
    """Turn the submitted checkbox set into additions and removals.

    Only groups offered on the page can be removed; memberships outside the
    groups OU are left alone.
    """

    detail = service.get_user_detail(record_id)
    if not detail.record.is_registered:
        # Let the workflow raise the precondition error.
        return [], []
    available: Set[DirectoryGroup] = set(service.list_available_groups())
    wanted = {DirectoryGroup.from_dn(dn.strip()) for dn in selected if dn and dn.strip()}
    current = set(detail.groups)

    to_add = [group.distinguished_name for group in wanted if group not in current]
    to_remove = [
        group.distinguished_name
        for group in detail.groups
        if group in available and group not in wanted
    ]
    return sorted(to_add, key=str.casefold), to_remove


def _load_app_config(app: Flask) -> AppConfig:
    configured = app.config.get("APP_CONFIG")
    if configured is not None:
        return configured
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def _get_service(app: Flask) -> RegistrationService:
    config = _load_app_config(app)
    signature = (str(config.storage.registrations_file), config.ldap)
    cached_signature = app.config.get("_SERVICE_SIGNATURE")
    cached_service = app.config.get("_SERVICE")
    if cached_service and cached_signature == signature:
        return cached_service

    store = RegistrationStore(config.storage.registrations_file)
    service = RegistrationService(store, config.ldap, app.config["DIRECTORY_FACTORY"])
    app.config["_SERVICE"] = service
    app.config["_SERVICE_SIGNATURE"] = signature
    return service


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("PORTAL_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("PORTAL_WEB_PORT", "5000")),
        debug=os.environ.get("PORTAL_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()


__all__ = ["create_app", "register_routes", "main"]

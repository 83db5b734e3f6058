import logging
from datetime import datetime

from flask import Blueprint, jsonify, g, request

from security.errors import ConfigurationError
from security.rbac import ADMIN_ROLE, require_roles
from security.services import get_security_services
from security.settings import SecurityConfig, save_security_config

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/security")


@admin_bp.get("/lockouts")
@require_roles(ADMIN_ROLE)
def list_lockouts():
    now = datetime.utcnow()
    lockouts = get_security_services().engine.list_active_lockouts(now)
    return jsonify(lockouts=[state.to_dict() for state in lockouts]), 200


@admin_bp.delete("/lockouts/<path:address>")
@require_roles(ADMIN_ROLE)
def unlock_address(address):
    state = get_security_services().engine.unlock(address, datetime.utcnow())
    if state is None:
        return jsonify(error="No lockout record for this address"), 404

    logger.info("Admin %s unlocked %s", g.user.username, address)
    return jsonify(message="Address unlocked", lockout=state.to_dict()), 200


@admin_bp.get("/attempts")
@require_roles(ADMIN_ROLE)
def list_attempts():
    limit = request.args.get("limit", default=100, type=int)
    attempts = get_security_services().engine.list_recent_attempts(limit)
    return jsonify(attempts=[a.to_dict() for a in attempts]), 200


@admin_bp.get("/addresses/<path:address>")
@require_roles(ADMIN_ROLE)
def inspect_address(address):
    return jsonify(get_security_services().engine.inspect(address, datetime.utcnow())), 200


@admin_bp.get("/settings")
@require_roles(ADMIN_ROLE)
def get_settings():
    return jsonify(get_security_services().config.to_dict()), 200


@admin_bp.put("/settings")
@require_roles(ADMIN_ROLE)
def update_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="Expected a JSON object"), 400

    current = get_security_services().config
    try:
        config = SecurityConfig.from_dict(data, base=current.to_dict())
        save_security_config(config)
    except ConfigurationError as exc:
        return jsonify(error="Invalid security settings", details=exc.problems), 400

    logger.info("Admin %s updated security settings", g.user.username)
    return jsonify(success=True, settings=config.to_dict()), 200

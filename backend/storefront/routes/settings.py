from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..extensions import db
from ..services import settings_service
from ..validation import ValidationError

settings_bp = Blueprint("settings", __name__, url_prefix="/api/admin/settings")


@settings_bp.get("")
@require_admin
def get_settings():
    config = settings_service.get_homepage_config()
    db.session.commit()
    return jsonify({"settings": config.to_dict()}), 200


@settings_bp.patch("")
@require_admin
def update_settings():
    try:
        config = settings_service.update_homepage_config(request.get_json(silent=True))
        current_app.logger.info("Store settings updated: %s", config.to_dict())
        return jsonify({"settings": config.to_dict()}), 200

    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400

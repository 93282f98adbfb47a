from __future__ import annotations

from dataclasses import dataclass

from flask import Blueprint, abort, current_app, jsonify, request

from . import services, store
from .geo import Coordinate
from .progress import parse_bool
from .secrets import load_catalog
from .watch import watch_positions

MAX_BATCH_POSITIONS = 500


journey_bp = Blueprint(
    "journey",
    __name__,
    url_prefix="/journey",
)


@dataclass
class FeatureGate:
    flag_name: str = "USE_JOURNEY"

    def enabled(self) -> bool:
        return bool(current_app.config.get(self.flag_name, False))

    def guard(self) -> None:
        if not self.enabled():
            abort(404)


feature_gate = FeatureGate()


def _current_user_id() -> str:
    return (request.headers.get("X-User-Id") or "").strip()


def _error(exc: services.JourneyServiceError):
    return jsonify(exc.payload), exc.status_code


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _form_value(name: str):
    return request.form.get(name) or request.args.get(name)


def _uploaded_image() -> bytes:
    file = request.files.get("photo") or request.files.get("image")
    if file is not None:
        return file.read()
    return request.get_data() or b""


@journey_bp.get("/status")
def journey_status():
    return jsonify(
        {
            "enabled": feature_gate.enabled(),
            "backend": store.backend_name(),
            "supabase": bool(current_app.config.get("USE_SUPABASE", False)),
            "guide": bool(current_app.config.get("GEMINI_API_KEY") or current_app.config.get("GEMINI_CLIENT")),
            "secrets": len(load_catalog()),
        }
    )


@journey_bp.get("/trip")
def get_trip():
    feature_gate.guard()
    try:
        result = services.get_trip_state(_current_user_id())
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/trip")
def create_trip():
    feature_gate.guard()
    payload = _json_body()
    try:
        result = services.create_trip(
            _current_user_id(),
            payload.get("trip"),
            days=payload.get("days", 3),
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result), 201


@journey_bp.post("/onboarding")
def complete_onboarding():
    feature_gate.guard()
    payload = _json_body()
    try:
        result = services.complete_onboarding(
            _current_user_id(),
            payload.get("preferences"),
            trip_payload=payload.get("trip"),
            generate=bool(payload.get("generate")),
            display_name=payload.get("display_name"),
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result), 201


@journey_bp.post("/missions/<mission_id>/start")
def start_mission(mission_id: str):
    feature_gate.guard()
    try:
        result = services.start_mission(_current_user_id(), mission_id)
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/missions/<mission_id>/tasks/<task_id>")
def update_task(mission_id: str, task_id: str):
    feature_gate.guard()
    payload = _json_body()
    if "completed" not in payload:
        return jsonify({"error": "missing_fields", "detail": "completed is required"}), 400
    try:
        result = services.update_task_status(
            _current_user_id(),
            mission_id,
            task_id,
            parse_bool(payload.get("completed")),
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/missions/<mission_id>/complete")
def complete_mission(mission_id: str):
    feature_gate.guard()
    try:
        result = services.complete_mission(_current_user_id(), mission_id)
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/missions/<mission_id>/photo")
def verify_photo(mission_id: str):
    feature_gate.guard()
    try:
        result = services.verify_photo_task(
            _current_user_id(),
            mission_id,
            _uploaded_image(),
            photo_url=_form_value("photo_url"),
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/photos/bonus")
def bonus_photo():
    feature_gate.guard()
    try:
        result = services.bonus_photo(
            _current_user_id(),
            _uploaded_image(),
            _form_value("location_name"),
            photo_url=_form_value("photo_url"),
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/position")
def report_position():
    feature_gate.guard()
    payload = _json_body()
    position = Coordinate.from_dict(payload)
    if position is None:
        return jsonify({"error": "missing_coordinates"}), 400
    try:
        result = services.discover_nearby_secrets(_current_user_id(), position)
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(result)


@journey_bp.post("/positions")
def report_positions():
    """Replay a buffered run of fixes, e.g. collected while the device was offline."""
    feature_gate.guard()
    raw = _json_body().get("positions")
    if not isinstance(raw, list) or not raw:
        return jsonify({"error": "missing_positions"}), 400
    if len(raw) > MAX_BATCH_POSITIONS:
        return jsonify({"error": "too_many_positions", "limit": MAX_BATCH_POSITIONS}), 400
    positions = [Coordinate.from_dict(item) for item in raw]
    if any(position is None for position in positions):
        return jsonify({"error": "missing_coordinates"}), 400
    try:
        discovered = watch_positions(_current_user_id(), positions)
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify({"discovered": discovered, "positions": len(positions)})


@journey_bp.get("/gallery")
def list_gallery():
    feature_gate.guard()
    try:
        photos = services.list_gallery(_current_user_id(), request.args.get("limit"))
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify({"photos": photos})


@journey_bp.post("/gallery")
def save_gallery_photo():
    feature_gate.guard()
    payload = _json_body()
    try:
        photo = services.save_gallery_photo(
            _current_user_id(),
            payload.get("url"),
            mission_id=payload.get("mission_id"),
            location=payload.get("location"),
            kind="user_capture",
        )
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify(photo), 201


@journey_bp.get("/secrets")
def list_secrets():
    feature_gate.guard()
    mission_id = (request.args.get("mission_id") or "").strip() or None
    try:
        secrets = services.list_secrets(_current_user_id() or None, mission_id)
    except services.JourneyServiceError as exc:
        return _error(exc)
    return jsonify({"secrets": secrets})


@journey_bp.get("/secrets/<secret_id>")
def secret_detail(secret_id: str):
    feature_gate.guard()
    try:
        return jsonify(services.secret_details(secret_id))
    except services.JourneyServiceError as exc:
        return _error(exc)

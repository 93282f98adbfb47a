from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from content_filter import ContentFilter

from . import gemini
from .images import InvalidImage, normalize_upload

MAX_HISTORY_TURNS = 20

guide_bp = Blueprint("guide", __name__, url_prefix="/guide")

CONTENT_FILTER = ContentFilter()


def _require_user():
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None, (jsonify({"error": "auth_required"}), 401)
    return user_id, None


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _clean_history(raw) -> list[dict]:
    if not isinstance(raw, list):
        return []
    history = []
    for item in raw[-MAX_HISTORY_TURNS:]:
        if not isinstance(item, dict):
            continue
        text = ContentFilter.sanitize(str(item.get("text") or ""))
        if text:
            history.append({"role": "model" if item.get("role") == "model" else "user", "text": text})
    return history


@guide_bp.post("/chat")
def guide_chat():
    user_id, denied = _require_user()
    if denied:
        return denied

    payload = _json_body()
    message = ContentFilter.sanitize(str(payload.get("message") or ""))
    if not message:
        return jsonify({"error": "missing_message"}), 400

    decision = CONTENT_FILTER.scan(message)
    if decision:
        current_app.logger.info("Guide message from %s blocked by %s", user_id, decision.rule_id)
        return jsonify({"error": "message_blocked", "reason": decision.to_dict()}), 422

    try:
        reply = gemini.chat(
            gemini.get_client(),
            message,
            history=_clean_history(payload.get("history")),
            persona=ContentFilter.sanitize(str(payload.get("persona") or ""))[:80].lower() or None,
            mission_title=ContentFilter.sanitize(str(payload.get("mission_title") or "")) or None,
        )
    except gemini.GuideError as exc:
        current_app.logger.warning("Guide chat failed for %s: %s", user_id, exc)
        return jsonify({"error": "guide_unavailable"}), exc.status_code

    return jsonify({"reply": reply})


@guide_bp.post("/photo/analyze")
def analyze_photo():
    user_id, denied = _require_user()
    if denied:
        return denied

    file = request.files.get("photo") or request.files.get("image")
    raw = file.read() if file is not None else request.get_data()
    try:
        image = normalize_upload(raw)
    except InvalidImage as exc:
        return jsonify({"error": "invalid_image", "detail": str(exc)}), 400

    try:
        analysis = gemini.analyze_photo(gemini.get_client(), image, request.form.get("mission_title"))
    except gemini.GuideError as exc:
        current_app.logger.warning("Photo analysis unavailable for %s: %s", user_id, exc)
        return jsonify({"error": "guide_unavailable"}), exc.status_code
    return jsonify(analysis)

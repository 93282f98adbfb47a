from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from guide import gemini
from guide.images import InvalidImage, normalize_upload

from . import store
from .errors import JourneyServiceError
from .geo import Coordinate
from .progress import (
    STATUS_COMPLETED,
    ProgressUpdate,
    Trip,
    build_default_trip,
    normalize_new_trip,
)
from .progress import complete_mission as _complete_mission
from .progress import set_task_completion as _set_task_completion
from .progress import start_mission as _start_mission
from .secrets import get_secret, load_catalog, secrets_for_mission, secrets_near

__all__ = [
    "JourneyServiceError",
    "bonus_photo",
    "complete_mission",
    "complete_onboarding",
    "create_trip",
    "discover_nearby_secrets",
    "get_trip_state",
    "list_gallery",
    "list_secrets",
    "save_gallery_photo",
    "start_mission",
    "update_task_status",
    "verify_photo_task",
]

BUDGETS = {"budget", "moderate", "luxury"}
PACES = {"relaxed", "moderate", "active"}
MIN_TRIP_DAYS = 1
MAX_TRIP_DAYS = 14
MAX_PHOTO_URL_LENGTH = 1024
MAX_GALLERY_PAGE = 200


def _clean_user(user_id: Optional[str]) -> str:
    cleaned = (user_id or "").strip()
    if not cleaned:
        raise JourneyServiceError("Sign in required", status_code=401, payload={"error": "auth_required"})
    return cleaned


def _require_trip(user_id: str) -> Trip:
    trip = store.load_trip(user_id)
    if trip is None:
        raise JourneyServiceError("No active trip", status_code=404, payload={"error": "trip_not_found"})
    return trip


def _coerce_days(value: Any, default: int = 3) -> int:
    try:
        days = int(value)
    except (TypeError, ValueError):
        return default
    return max(MIN_TRIP_DAYS, min(MAX_TRIP_DAYS, days))


def _discovered_ids(user_id: str) -> List[str]:
    return [row["secret_id"] for row in store.list_discoveries(user_id)]


def _reward_for(update: ProgressUpdate) -> Tuple[int, int]:
    """Task XP plus mission rewards for whatever this update completed."""
    xp = update.task_xp + sum(mission.xp_reward for mission in update.completed_missions)
    gold = sum(mission.gold_reward for mission in update.completed_missions)
    return xp, gold


def _commit_update(
    user_id: str,
    trip: Trip,
    update: ProgressUpdate,
    previous: Dict[str, Any],
) -> Tuple[Trip, Optional[Dict[str, int]]]:
    """Persist an engine update and its reward together; nothing is saved when nothing changed."""
    if not update.changed:
        return trip, None
    xp, gold = _reward_for(update)
    if xp or gold:
        return store.save_trip_with_reward(user_id, trip, xp, gold, previous=previous)
    return store.save_trip(user_id, trip), None


def get_trip_state(user_id: str) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    trip = store.load_trip(user_id)
    return {
        "trip": trip.to_dict() if trip else None,
        "stats": store.get_stats(user_id),
        "profile": store.get_profile(user_id),
        "discovered_secrets": _discovered_ids(user_id),
    }


def create_trip(user_id: str, trip_payload: Optional[Dict[str, Any]] = None, *, days: int = 3) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    if trip_payload is not None and not isinstance(trip_payload, dict):
        raise JourneyServiceError("Trip must be an object", status_code=400, payload={"error": "invalid_trip"})

    if trip_payload and trip_payload.get("missions"):
        trip = normalize_new_trip(Trip.from_dict(trip_payload))
        source = "provided"
    else:
        trip = build_default_trip(_coerce_days(days))
        source = "default"

    saved = store.save_trip(user_id, trip)
    current_app.logger.info("Created %s trip for %s with %d missions", source, user_id, len(saved.missions))
    return {"trip": saved.to_dict(), "source": source}


def _validate_preferences(preferences: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(preferences, dict):
        preferences = {}
    language = (preferences.get("language") or "ar").strip().lower()[:10] or "ar"
    interests = preferences.get("interests") or []
    if not isinstance(interests, list):
        raise JourneyServiceError("Interests must be a list", status_code=400, payload={"error": "invalid_interests"})
    budget = (preferences.get("budget") or "moderate").strip().lower()
    if budget not in BUDGETS:
        raise JourneyServiceError("Unknown budget", status_code=400, payload={"error": "invalid_budget"})
    pace = (preferences.get("pace") or "moderate").strip().lower()
    if pace not in PACES:
        raise JourneyServiceError("Unknown pace", status_code=400, payload={"error": "invalid_pace"})
    return {
        "language": language,
        "interests": [str(item).strip() for item in interests if str(item).strip()],
        "budget": budget,
        "pace": pace,
        "trip_duration": _coerce_days(preferences.get("trip_duration")),
    }


def complete_onboarding(
    user_id: str,
    preferences: Optional[Dict[str, Any]],
    *,
    trip_payload: Optional[Dict[str, Any]] = None,
    generate: bool = False,
    display_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Store the questionnaire answers and create the traveller's first trip."""
    user_id = _clean_user(user_id)
    answers = _validate_preferences(preferences)

    if trip_payload is None and generate:
        try:
            trip_payload = gemini.plan_trip(gemini.get_client(), answers)
        except gemini.GuideError as exc:
            current_app.logger.warning("Trip generation failed, using default trip: %s", exc)
            trip_payload = None

    created = create_trip(user_id, trip_payload, days=answers["trip_duration"])
    fields = {**answers, "onboarding_complete": True}
    if display_name:
        fields["display_name"] = display_name.strip()[:120]
    profile = store.save_profile(user_id, fields)
    return {**created, "profile": profile}


def update_task_status(user_id: str, mission_id: str, task_id: str, completed: bool) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    trip = _require_trip(user_id)
    previous = trip.to_dict()
    update = _set_task_completion(trip, mission_id, task_id, completed)
    trip, totals = _commit_update(user_id, trip, update, previous)
    return {
        "trip": trip.to_dict(),
        "update": update.summary(),
        "stats": totals or store.get_stats(user_id),
    }


def start_mission(user_id: str, mission_id: str) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    trip = _require_trip(user_id)
    update = _start_mission(trip, mission_id)
    if update.changed:
        trip = store.save_trip(user_id, trip)
    return {"trip": trip.to_dict(), "update": update.summary()}


def complete_mission(user_id: str, mission_id: str) -> Dict[str, Any]:
    """Finish a mission outright, ticking its open tasks and paying their XP plus the mission reward."""
    user_id = _clean_user(user_id)
    trip = _require_trip(user_id)
    if trip.find_mission(mission_id) is None:
        raise JourneyServiceError("Mission not found", status_code=404, payload={"error": "mission_not_found"})
    previous = trip.to_dict()
    update = _complete_mission(trip, mission_id)
    trip, totals = _commit_update(user_id, trip, update, previous)
    return {
        "trip": trip.to_dict(),
        "update": update.summary(),
        "stats": totals or store.get_stats(user_id),
    }


def discover_nearby_secrets(user_id: str, position: Coordinate) -> Dict[str, Any]:
    """Record every in-range secret not yet found and reward each new find once."""
    user_id = _clean_user(user_id)
    nearby = secrets_near(position)
    discovered = []
    xp = gold = 0
    totals = None
    for secret in nearby:
        claimed = store.claim_secret(user_id, secret.id, secret.xp_reward, secret.gold_reward)
        if claimed is None:
            continue
        totals = claimed
        discovered.append(secret)
        xp += secret.xp_reward
        gold += secret.gold_reward
        current_app.logger.info("%s discovered secret %s", user_id, secret.id)

    return {
        "nearby": [secret.id for secret in nearby],
        "discovered": [secret.to_dict() for secret in discovered],
        "reward": {"xp": xp, "gold": gold},
        "stats": totals,
    }


def list_secrets(user_id: Optional[str], mission_id: Optional[str] = None) -> List[Dict[str, Any]]:
    secrets = secrets_for_mission(mission_id) if mission_id else list(load_catalog())
    found = set(_discovered_ids(user_id)) if user_id else set()
    return [{**secret.to_dict(), "discovered": secret.id in found} for secret in secrets]


def verify_photo_task(
    user_id: str,
    mission_id: str,
    image_bytes: bytes,
    photo_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Check a capture against the next open photo task and complete it when it passes.

    When ``photo_url`` is given the capture is also added to the gallery,
    whatever the verdict.
    """
    user_id = _clean_user(user_id)
    trip = _require_trip(user_id)
    mission = trip.find_mission(mission_id)
    if mission is None:
        raise JourneyServiceError("Mission not found", status_code=404, payload={"error": "mission_not_found"})
    if mission.status == STATUS_COMPLETED:
        raise JourneyServiceError("Mission already completed", status_code=409, payload={"error": "mission_completed"})
    task = next((item for item in mission.tasks if item.kind == "photo" and not item.completed), None)
    if task is None:
        raise JourneyServiceError("No open photo task", status_code=409, payload={"error": "no_photo_task"})

    try:
        image = normalize_upload(image_bytes)
    except InvalidImage as exc:
        raise JourneyServiceError(str(exc), status_code=400, payload={"error": "invalid_image"}) from exc

    try:
        verdict = gemini.verify_photo(gemini.get_client(), image, mission.title, task.requirement or task.label)
    except gemini.GuideUnavailable as exc:
        raise JourneyServiceError(str(exc), status_code=503, payload={"error": "guide_unavailable"}) from exc

    photo = None
    if photo_url:
        photo = save_gallery_photo(
            user_id,
            photo_url,
            mission_id=mission_id,
            location=mission.location.get("name"),
            kind="mission_photo",
        )

    if not verdict["verified"]:
        return {"verified": False, "feedback": verdict["feedback"], "task_id": task.id, "photo": photo}

    result = update_task_status(user_id, mission_id, task.id, True)
    return {"verified": True, "feedback": verdict["feedback"], "task_id": task.id, "photo": photo, **result}


def bonus_photo(
    user_id: str,
    image_bytes: bytes,
    location_name: Optional[str] = None,
    photo_url: Optional[str] = None,
) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    try:
        image = normalize_upload(image_bytes)
    except InvalidImage as exc:
        raise JourneyServiceError(str(exc), status_code=400, payload={"error": "invalid_image"}) from exc
    try:
        result = gemini.analyze_bonus_photo(gemini.get_client(), image, location_name)
    except gemini.GuideUnavailable as exc:
        raise JourneyServiceError(str(exc), status_code=503, payload={"error": "guide_unavailable"}) from exc
    photo = save_gallery_photo(user_id, photo_url, location=location_name, kind="bonus") if photo_url else None

    totals = store.grant_reward(user_id, result["reward"], 0) if result["reward"] else None
    return {**result, "photo": photo, "stats": totals or store.get_stats(user_id)}


def save_gallery_photo(
    user_id: str,
    url: Optional[str],
    *,
    mission_id: Optional[str] = None,
    location: Optional[str] = None,
    kind: str = "user_capture",
) -> Dict[str, Any]:
    user_id = _clean_user(user_id)
    url = url.strip() if isinstance(url, str) else ""
    if not url or len(url) > MAX_PHOTO_URL_LENGTH or not url.startswith(("https://", "http://")):
        raise JourneyServiceError("A photo URL is required", status_code=400, payload={"error": "invalid_photo_url"})
    location = str(location or "").strip()[:255] or None
    mission_id = str(mission_id or "").strip()[:128] or None
    return store.save_photo(user_id, url, mission_id=mission_id, location=location, kind=kind)


def list_gallery(user_id: str, limit: Any = None) -> List[Dict[str, Any]]:
    user_id = _clean_user(user_id)
    try:
        limit = max(1, min(MAX_GALLERY_PAGE, int(limit))) if limit is not None else None
    except (TypeError, ValueError):
        limit = None
    return store.list_photos(user_id, limit)


def secret_details(secret_id: str) -> Dict[str, Any]:
    secret = get_secret(secret_id)
    if secret is None:
        raise JourneyServiceError("Secret not found", status_code=404, payload={"error": "secret_not_found"})
    return secret.to_dict()

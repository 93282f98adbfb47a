"""Gemini client on the google-genai SDK plus the prompts the journey screens rely on."""

from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app, has_app_context
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

DEFAULT_MODEL = "gemini-2.0-flash"
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0
RETRYABLE_STATUS = {429, 503}

BONUS_TYPES = {"camel", "food", "locals", "sunset", "architecture", "street", "none"}
PHOTO_RATINGS = {"excellent", "good", "average", "needs-improvement"}
MAX_BONUS_REWARD = 50

DEFAULT_PERSONA = "friendly"
PERSONAS: Dict[str, Dict[str, str]] = {
    "cleopatra": {
        "name": "Cleopatra",
        "voice": (
            "Speak as Cleopatra VII, the last queen of Ptolemaic Egypt: a passionate storyteller who "
            "talks eloquently about pharaohs, kings and court life."
        ),
    },
    "ahmed": {
        "name": "Ahmed the Guide",
        "voice": (
            "Speak as Ahmed, a warm Cairo-born local guide who shares practical tips, places to eat "
            "and the everyday knowledge of someone who grew up here."
        ),
    },
    "zahi": {
        "name": "Dr. Zahi Hawass",
        "voice": (
            "Speak as Dr. Zahi Hawass, the Egyptologist: an expert archaeologist who brings in the "
            "latest excavations and scientific findings."
        ),
    },
    "friendly": {
        "name": "Friendly Explorer",
        "voice": "Speak as a friendly, encouraging companion who makes exploring fun.",
    },
}

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


class GuideError(Exception):
    """Raised when the model call fails or returns something unusable."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class GuideUnavailable(GuideError):
    """Raised when no API key is configured."""

    def __init__(self, message: str = "Gemini API key not configured"):
        super().__init__(message, status_code=503)


def _log_warning(message: str, *args: Any) -> None:
    if has_app_context():
        current_app.logger.warning(message, *args)


def extract_json(text: str) -> Dict[str, Any]:
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise GuideError("Invalid response format from Gemini")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise GuideError("Gemini returned malformed JSON") from exc
    if not isinstance(payload, dict):
        raise GuideError("Gemini returned a non-object JSON payload")
    return payload


def image_part(image_bytes: bytes, mime_type: str = "image/jpeg") -> Dict[str, Any]:
    return {"inline_data": {"mime_type": mime_type, "data": image_bytes}}


def _to_part(part: Dict[str, Any]) -> types.Part:
    inline = part.get("inline_data")
    if inline:
        return types.Part.from_bytes(data=inline["data"], mime_type=inline.get("mime_type") or "image/jpeg")
    return types.Part(text=str(part.get("text") or ""))


def _to_content(turn: Dict[str, Any]) -> types.Content:
    return types.Content(role=turn.get("role") or "user", parts=[_to_part(p) for p in turn.get("parts") or []])


def resolve_persona(persona: Optional[str]) -> Dict[str, str]:
    key = (persona or "").strip().lower()
    if key in PERSONAS:
        return PERSONAS[key]
    for entry in PERSONAS.values():
        if entry["name"].lower() == key:
            return entry
    return PERSONAS[DEFAULT_PERSONA]


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        *,
        client: Optional[Any] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ):
        if not api_key and client is None:
            raise GuideUnavailable()
        self.model = model or DEFAULT_MODEL
        self.client = client if client is not None else genai.Client(api_key=api_key)
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = max(0.0, float(retry_delay))

    def generate(self, parts: List[Dict[str, Any]], *, history: Optional[List[Dict[str, Any]]] = None) -> str:
        """Send one generate_content call; 429 and 503 are retried, anything else fails fast."""
        contents = [_to_content(turn) for turn in history or []]
        contents.append(_to_content({"role": "user", "parts": parts}))

        attempts_left = self.max_retries
        while True:
            try:
                resp = self.client.models.generate_content(model=self.model, contents=contents)
            except genai_errors.APIError as exc:
                if exc.code in RETRYABLE_STATUS and attempts_left > 0:
                    attempts_left -= 1
                    _log_warning("Gemini returned %s; retrying (%s left)", exc.code, attempts_left)
                    time.sleep(self.retry_delay)
                    continue
                raise GuideError(f"Gemini error {exc.code}", status_code=502) from exc
            except Exception as exc:  # pragma: no cover - external service dependency
                raise GuideError(f"Gemini request failed: {exc}") from exc
            break

        text = getattr(resp, "text", None)
        if not text:
            raise GuideError("Gemini returned no candidates")
        return text

def get_client() -> GeminiClient:
    client = current_app.config.get("GEMINI_CLIENT")
    if client is not None:
        return client
    return GeminiClient(
        current_app.config.get("GEMINI_API_KEY") or "",
        current_app.config.get("GEMINI_MODEL") or DEFAULT_MODEL,
    )


def verify_photo(
    client: GeminiClient,
    image_bytes: bytes,
    mission_title: str,
    requirement: Optional[str] = None,
) -> Dict[str, Any]:
    prompt = (
        "Analyze this photo to verify if it matches the mission requirements.\n\n"
        f"Mission: {mission_title}\n"
        + (f"Requirements: {requirement}\n" if requirement else "")
        + "\nDetermine if the photo:\n"
        "1. Shows the correct location/landmark\n"
        "2. Meets the specified requirements (if any)\n"
        "3. Is clear and identifiable\n\n"
        'Respond in JSON format: {"verified": boolean, "feedback": "brief feedback explaining the result"}\n'
        "Only return valid JSON, no additional text."
    )
    try:
        result = extract_json(client.generate([{"text": prompt}, image_part(image_bytes)]))
    except GuideUnavailable:
        raise
    except GuideError as exc:
        _log_warning("Photo verification failed: %s", exc)
        return {"verified": False, "feedback": "We could not verify the photo"}
    return {
        "verified": result.get("verified") is True,
        "feedback": str(result.get("feedback") or ""),
    }


def analyze_photo(client: GeminiClient, image_bytes: bytes, mission_title: Optional[str] = None) -> Dict[str, Any]:
    where = f" taken at {mission_title}" if mission_title else ""
    prompt = (
        f"Analyze this tourist photo{where}.\n"
        "Score composition, lighting, angle and overall appeal from 0 to 100, and estimate the "
        "percentile of this photo against typical tourist photos of the location.\n"
        'Respond in JSON: {"composition": number, "lighting": number, "angle": number, "overall": number, '
        '"percentile": number, "rating": "excellent" | "good" | "average" | "needs-improvement", '
        '"feedback": "short feedback", "suggestions": ["suggestion"]}\n'
        "Only return valid JSON, no additional text."
    )
    fallback = {
        "composition": 50,
        "percentile": 50,
        "rating": "average",
        "feedback": "Photo analysed",
        "suggestions": ["Try a different angle", "Use natural light"],
    }
    try:
        result = extract_json(client.generate([{"text": prompt}, image_part(image_bytes)]))
    except GuideUnavailable:
        raise
    except GuideError as exc:
        _log_warning("Photo analysis failed: %s", exc)
        return fallback

    rating = result.get("rating")
    suggestions = result.get("suggestions")
    return {
        "composition": _score(result.get("composition")),
        "percentile": _score(result.get("percentile")),
        "rating": rating if rating in PHOTO_RATINGS else "average",
        "feedback": str(result.get("feedback") or fallback["feedback"]),
        "suggestions": [str(item) for item in suggestions] if isinstance(suggestions, list) else [],
    }


def analyze_bonus_photo(client: GeminiClient, image_bytes: bytes, location_name: Optional[str] = None) -> Dict[str, Any]:
    where = f" at {location_name}" if location_name else ""
    prompt = (
        f"Analyze this photo taken{where} and identify if it contains a special moment: a camel ride "
        "or desert scene, local food, local people or cultural moments, a sunset, traditional "
        "architecture details, or a street market scene.\n"
        'Respond in JSON: {"type": "camel" | "food" | "locals" | "sunset" | "architecture" | "street" | "none", '
        '"description": "brief description", "reward": number (0-50)}\n'
        "Only return valid JSON, no additional text."
    )
    try:
        result = extract_json(client.generate([{"text": prompt}, image_part(image_bytes)]))
    except GuideUnavailable:
        raise
    except GuideError as exc:
        _log_warning("Bonus photo analysis failed: %s", exc)
        return {"type": "none", "description": "", "reward": 0}

    kind = result.get("type") if result.get("type") in BONUS_TYPES else "none"
    try:
        reward = int(result.get("reward") or 0)
    except (TypeError, ValueError):
        reward = 0
    reward = 0 if kind == "none" else max(0, min(MAX_BONUS_REWARD, reward))
    return {"type": kind, "description": str(result.get("description") or ""), "reward": reward}


def plan_trip(client: GeminiClient, preferences: Dict[str, Any]) -> Dict[str, Any]:
    """Ask the model for a trip document; raises GuideError when nothing usable comes back."""
    interests = ", ".join(preferences.get("interests") or []) or "history"
    prompt = (
        "You are an expert Egypt trip planner. Build a detailed trip for these preferences:\n"
        f"- Trip length: {preferences.get('trip_duration', 3)} days\n"
        f"- Interests: {interests}\n"
        f"- Budget: {preferences.get('budget', 'moderate')}\n"
        f"- Pace: {preferences.get('pace', 'moderate')}\n"
        f"- Language for titles and descriptions: {preferences.get('language', 'ar')}\n\n"
        'Return JSON shaped as {"id": "trip_1", "title": string, "days": number, "progress": 0, '
        '"missions": [{"id": string, "day": number, "title": string, "description": string, '
        '"status": "active" | "locked", "xpReward": 50-150, "goldReward": 10-50, '
        '"difficulty": "Easy" | "Medium" | "Hard", "imageUrl": string, '
        '"location": {"lat": number, "lng": number, "name": string}, '
        '"tasks": [{"id": string, "type": "photo" | "quiz" | "ar" | "check", "label": string, '
        '"xp": 10-50, "completed": false, "requirement": string}]}]}\n'
        "Only the first mission is active, the rest locked. Add 3-5 tasks per day. Use real places "
        "in Egypt with correct coordinates. Reply with JSON only."
    )
    trip = extract_json(client.generate([{"text": prompt}]))
    if not isinstance(trip.get("missions"), list) or not trip["missions"]:
        raise GuideError("Generated trip has no missions")
    return trip


def chat(
    client: GeminiClient,
    message: str,
    *,
    history: Optional[Iterable[Dict[str, str]]] = None,
    persona: Optional[str] = None,
    mission_title: Optional[str] = None,
) -> str:
    voice = resolve_persona(persona)
    system = (
        f"You are {voice['name']}, a guide to Egyptian history for a traveller on a location-based "
        "adventure. Keep answers short, accurate and encouraging. " + voice["voice"]
    )
    if mission_title:
        system += f" The traveller is currently at: {mission_title}."

    turns: List[Dict[str, Any]] = [{"role": "user", "parts": [{"text": system}]}]
    for item in history or []:
        role = "model" if item.get("role") == "model" else "user"
        text = (item.get("text") or "").strip()
        if text:
            turns.append({"role": role, "parts": [{"text": text}]})
    reply = client.generate([{"text": message}], history=turns).strip()
    if not reply:
        raise GuideError("Gemini returned an empty reply")
    return reply


def _score(value: Any, default: int = 50) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(0, min(100, number))

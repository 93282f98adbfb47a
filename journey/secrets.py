"""Hidden secret catalog and the radius checks run against live positions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from flask import current_app, has_app_context

from .geo import Coordinate, distance_m

_RESOURCE_DIR = Path(__file__).resolve().parent / "resources"
DEFAULT_CATALOG_PATH = _RESOURCE_DIR / "hidden_secrets.json"
DEFAULT_RADIUS_M = 50.0

_catalog_cache: Dict[str, Any] = {"path": None, "mtime": 0, "secrets": ()}


@dataclass(frozen=True)
class Secret:
    id: str
    mission_id: str
    location: Coordinate
    radius_m: float
    xp_reward: int = 0
    gold_reward: int = 0
    rarity_percent: Optional[int] = None
    title: str = ""
    description: str = ""
    hint: str = ""
    location_name: str = field(default="", compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mission_id": self.mission_id,
            "title": self.title,
            "description": self.description,
            "hint": self.hint,
            "location": {
                "lat": self.location.latitude,
                "lng": self.location.longitude,
                "name": self.location_name,
            },
            "radius_m": self.radius_m,
            "xp_reward": self.xp_reward,
            "gold_reward": self.gold_reward,
            "rarity_percent": self.rarity_percent,
        }


def _logger():
    if has_app_context():
        return current_app.logger
    return logging.getLogger(__name__)


def _parse_secret(entry: Dict[str, Any]) -> Optional[Secret]:
    secret_id = str(entry.get("id") or "").strip()
    mission_id = str(entry.get("mission_id") or entry.get("missionId") or "").strip()
    if not secret_id or not mission_id:
        return None
    location = Coordinate.from_dict(entry.get("location"))
    if location is None:
        return None
    try:
        radius = float(entry.get("radius_m") or entry.get("radius") or DEFAULT_RADIUS_M)
        xp_reward = max(0, int(entry.get("xp_reward") or 0))
        gold_reward = max(0, int(entry.get("gold_reward") or 0))
    except (TypeError, ValueError):
        return None
    if radius <= 0:
        return None

    rarity = entry.get("rarity_percent")
    try:
        rarity = int(rarity) if rarity is not None else None
    except (TypeError, ValueError):
        rarity = None

    return Secret(
        id=secret_id,
        mission_id=mission_id,
        location=location,
        radius_m=radius,
        xp_reward=xp_reward,
        gold_reward=gold_reward,
        rarity_percent=rarity,
        title=entry.get("title") or "",
        description=entry.get("description") or "",
        hint=entry.get("hint") or "",
        location_name=(entry.get("location") or {}).get("name") or "",
    )


def parse_catalog(payload: Dict[str, Any]) -> Tuple[Secret, ...]:
    secrets: List[Secret] = []
    seen = set()
    for entry in payload.get("secrets", []):
        if not isinstance(entry, dict):
            continue
        secret = _parse_secret(entry)
        if secret is None:
            _logger().warning("Skipping malformed hidden secret entry: %r", entry.get("id"))
            continue
        if secret.id in seen:
            _logger().warning("Skipping duplicate hidden secret id %s", secret.id)
            continue
        seen.add(secret.id)
        secrets.append(secret)
    return tuple(secrets)


def get_catalog_path() -> Path:
    if has_app_context():
        value = current_app.config.get("JOURNEY_SECRETS_PATH")
        if value:
            path = Path(value)
            if not path.is_absolute():
                path = Path(current_app.root_path) / path
            return path
    return DEFAULT_CATALOG_PATH


def load_catalog(force_refresh: bool = False) -> Tuple[Secret, ...]:
    """Return the secret catalog, re-reading the JSON only when the file changes."""
    path = get_catalog_path()
    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        _logger().warning("Hidden secret catalog missing at %s; using bundled catalog", path)
        path = DEFAULT_CATALOG_PATH
        mtime = path.stat().st_mtime

    cached_path = _catalog_cache.get("path")
    if not force_refresh and cached_path == str(path) and _catalog_cache.get("mtime", 0) >= mtime:
        return _catalog_cache["secrets"]

    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        _logger().warning("Unable to load hidden secret catalog from %s: %s", path, exc)
        _catalog_cache.update({"path": str(path), "mtime": mtime, "secrets": ()})
        return ()

    secrets = parse_catalog(payload if isinstance(payload, dict) else {})
    _catalog_cache.update({"path": str(path), "mtime": mtime, "secrets": secrets})
    return secrets


def get_secret(secret_id: str, catalog: Optional[Iterable[Secret]] = None) -> Optional[Secret]:
    if not secret_id:
        return None
    for secret in catalog if catalog is not None else load_catalog():
        if secret.id == secret_id:
            return secret
    return None


def is_near_secret(position: Coordinate, secret: Secret) -> bool:
    return distance_m(position, secret.location) <= secret.radius_m


def secrets_near(position: Coordinate, catalog: Optional[Iterable[Secret]] = None) -> List[Secret]:
    """Secrets whose radius contains the position; the boundary itself counts as inside."""
    source = catalog if catalog is not None else load_catalog()
    return [secret for secret in source if is_near_secret(position, secret)]


def secrets_for_mission(mission_id: str, catalog: Optional[Iterable[Secret]] = None) -> List[Secret]:
    source = catalog if catalog is not None else load_catalog()
    return [secret for secret in source if secret.mission_id == mission_id]

"""Persistence for trips, discoveries, gallery photos and reward totals.

Supabase is used when ``USE_SUPABASE`` is on and a client is configured; the
Flask-SQLAlchemy models in ``models.py`` back everything otherwise. Trips are
read and written whole. Discoveries are insert-if-absent on a unique
``(user_id, secret_id)`` key so only one caller ever wins a given secret, and
the secret's reward is written with the discovery or not at all.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import GalleryPhoto, SecretDiscovery, TravellerProfile, TripDocument, level_for_xp

from .errors import JourneyServiceError
from .progress import ACTIVE_TRIP_ID, Trip

TRIPS_TABLE = "journey_trips"
DISCOVERIES_TABLE = "secret_discoveries"
PROFILES_TABLE = "traveller_profiles"
GALLERY_TABLE = "gallery_photos"

DEFAULT_STATS = {"xp": 0, "gold": 100, "level": 1}
PROFILE_FIELDS = {
    "display_name",
    "language",
    "interests",
    "budget",
    "pace",
    "trip_duration",
    "onboarding_complete",
}
PHOTO_KINDS = {"user_capture", "mission_photo", "bonus"}

TripCallback = Callable[[Trip], None]

_subscribers: Dict[str, List[TripCallback]] = {}
_subscribers_lock = threading.Lock()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_supabase_client():
    if not has_app_context():
        return None
    if not current_app.config.get("USE_SUPABASE"):
        return None
    client = current_app.config.get("SUPABASE_CLIENT")
    return client if client else None


def backend_name() -> str:
    return "supabase" if _get_supabase_client() else "sql"


def _store_failure(action: str, exc: Exception) -> JourneyServiceError:
    if has_app_context():
        current_app.logger.exception("Journey store error while %s: %s", action, exc)
    return JourneyServiceError(
        "Journey storage is unavailable",
        status_code=502,
        payload={"error": "store_unavailable", "action": action},
    )


def _is_supabase_conflict(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate key value" in message or "unique constraint" in message or "23505" in message


def _parse_timestamp(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Trips


def load_trip(user_id: str, trip_id: str = ACTIVE_TRIP_ID) -> Optional[Trip]:
    """Return the stored trip aggregate, or None if the traveller has none yet."""
    client = _get_supabase_client()
    if client:
        try:
            resp = (
                client.table(TRIPS_TABLE)
                .select("document")
                .eq("user_id", user_id)
                .eq("trip_id", trip_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise _store_failure("loading trip", exc) from exc
        rows = getattr(resp, "data", None) or []
        document = rows[0].get("document") if rows else None
        return Trip.from_dict(document) if isinstance(document, dict) else None

    try:
        row = TripDocument.query.filter_by(user_id=user_id, trip_id=trip_id).first()
    except SQLAlchemyError as exc:
        raise _store_failure("loading trip", exc) from exc
    if not row or not isinstance(row.document, dict):
        return None
    return Trip.from_dict(row.document)


def _upsert_trip_supabase(client, user_id: str, trip_id: str, document: Dict[str, Any]) -> None:
    payload = {
        "user_id": user_id,
        "trip_id": trip_id,
        "document": document,
        "updated_at": _now_iso(),
    }
    client.table(TRIPS_TABLE).upsert(payload, on_conflict="user_id,trip_id").execute()


def _write_trip_sql(user_id: str, trip_id: str, document: Dict[str, Any]) -> None:
    row = TripDocument.query.filter_by(user_id=user_id, trip_id=trip_id).first()
    if row is None:
        db.session.add(TripDocument(user_id=user_id, trip_id=trip_id, document=document))
    else:
        row.document = document


def save_trip(user_id: str, trip: Trip, trip_id: str = ACTIVE_TRIP_ID) -> Trip:
    """Upsert the whole trip document, then push the saved state to subscribers."""
    document = trip.to_dict()
    client = _get_supabase_client()
    if client:
        try:
            _upsert_trip_supabase(client, user_id, trip_id, document)
        except Exception as exc:
            raise _store_failure("saving trip", exc) from exc
    else:
        try:
            _write_trip_sql(user_id, trip_id, document)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise _store_failure("saving trip", exc) from exc

    saved = Trip.from_dict(document)
    _notify(user_id, saved)
    return saved


def save_trip_with_reward(
    user_id: str,
    trip: Trip,
    xp: int,
    gold: int = 0,
    *,
    previous: Optional[Dict[str, Any]] = None,
    trip_id: str = ACTIVE_TRIP_ID,
) -> Tuple[Trip, Dict[str, int]]:
    """Persist a trip change together with the reward it earned.

    Locally both writes share one commit. On Supabase the trip is written
    first; if the reward then fails, ``previous`` (the document as loaded) is
    written back so a retry sees the task still open.
    """
    document = trip.to_dict()
    client = _get_supabase_client()
    if client:
        try:
            _upsert_trip_supabase(client, user_id, trip_id, document)
        except Exception as exc:
            raise _store_failure("saving trip", exc) from exc
        try:
            totals = _grant_reward_supabase(client, user_id, xp, gold)
        except JourneyServiceError:
            if previous is not None:
                try:
                    _upsert_trip_supabase(client, user_id, trip_id, previous)
                except Exception as exc:
                    current_app.logger.exception("Could not restore trip for %s after failed reward: %s", user_id, exc)
            raise
    else:
        try:
            _write_trip_sql(user_id, trip_id, document)
            profile = _apply_reward_sql(user_id, xp, gold)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise _store_failure("saving trip with reward", exc) from exc
        totals = profile.stats_dict()

    saved = Trip.from_dict(document)
    _notify(user_id, saved)
    return saved, totals


def list_trip_rows() -> List[Dict[str, Any]]:
    """Every stored trip as ``{user_id, trip_id, document}`` rows."""
    client = _get_supabase_client()
    if client:
        try:
            resp = client.table(TRIPS_TABLE).select("user_id, trip_id, document").execute()
        except Exception as exc:
            raise _store_failure("listing trips", exc) from exc
        return list(getattr(resp, "data", None) or [])

    try:
        rows = TripDocument.query.order_by(TripDocument.id.asc()).all()
    except SQLAlchemyError as exc:
        raise _store_failure("listing trips", exc) from exc
    return [{"user_id": row.user_id, "trip_id": row.trip_id, "document": row.document} for row in rows]


# ---------------------------------------------------------------------------
# Subscriptions


def subscribe_trip(user_id: str, callback: TripCallback) -> Callable[[], None]:
    """Register a callback fed the full trip after every save; returns the unsubscribe handle."""
    with _subscribers_lock:
        _subscribers.setdefault(user_id, []).append(callback)

    def unsubscribe() -> None:
        with _subscribers_lock:
            callbacks = _subscribers.get(user_id)
            if not callbacks:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                _subscribers.pop(user_id, None)

    return unsubscribe


def _notify(user_id: str, trip: Trip) -> None:
    with _subscribers_lock:
        callbacks = list(_subscribers.get(user_id, []))
    for callback in callbacks:
        try:
            callback(Trip.from_dict(trip.to_dict()))
        except Exception as exc:
            if has_app_context():
                current_app.logger.warning("Trip subscriber for %s failed: %s", user_id, exc)


# ---------------------------------------------------------------------------
# Discovery ledger


def is_discovered(user_id: str, secret_id: str) -> bool:
    client = _get_supabase_client()
    if client:
        try:
            resp = (
                client.table(DISCOVERIES_TABLE)
                .select("secret_id")
                .eq("user_id", user_id)
                .eq("secret_id", secret_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise _store_failure("checking discovery", exc) from exc
        return bool(getattr(resp, "data", None))

    try:
        return SecretDiscovery.query.filter_by(user_id=user_id, secret_id=secret_id).first() is not None
    except SQLAlchemyError as exc:
        raise _store_failure("checking discovery", exc) from exc


def _insert_discovery_supabase(client, user_id: str, secret_id: str) -> bool:
    payload = {
        "user_id": user_id,
        "secret_id": secret_id,
        "discovered_at": _now_iso(),
    }
    try:
        client.table(DISCOVERIES_TABLE).insert(payload, returning="minimal").execute()
        return True
    except Exception as exc:
        if _is_supabase_conflict(exc):
            return False
        raise _store_failure("recording discovery", exc) from exc


def record_discovery(user_id: str, secret_id: str) -> bool:
    """Insert the discovery if absent; True only for the call that created it."""
    client = _get_supabase_client()
    if client:
        return _insert_discovery_supabase(client, user_id, secret_id)

    db.session.add(SecretDiscovery(user_id=user_id, secret_id=secret_id))
    try:
        db.session.commit()
        return True
    except IntegrityError:
        db.session.rollback()
        return False
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("recording discovery", exc) from exc


def claim_secret(user_id: str, secret_id: str, xp: int, gold: int = 0) -> Optional[Dict[str, int]]:
    """Record a discovery and grant its reward as one unit.

    Returns the new totals for the call that created the discovery and None
    when it already existed. If the reward cannot be written the discovery is
    not kept either, so a retry can still claim it.
    """
    client = _get_supabase_client()
    if client:
        if not _insert_discovery_supabase(client, user_id, secret_id):
            return None
        try:
            return _grant_reward_supabase(client, user_id, xp, gold)
        except JourneyServiceError:
            try:
                (
                    client.table(DISCOVERIES_TABLE)
                    .delete()
                    .eq("user_id", user_id)
                    .eq("secret_id", secret_id)
                    .execute()
                )
            except Exception as exc:
                current_app.logger.exception("Could not release discovery %s for %s: %s", secret_id, user_id, exc)
            raise

    try:
        db.session.add(SecretDiscovery(user_id=user_id, secret_id=secret_id))
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return None
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("recording discovery", exc) from exc

    try:
        profile = _apply_reward_sql(user_id, xp, gold)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("recording discovery", exc) from exc
    return profile.stats_dict()


def list_discoveries(user_id: str) -> List[Dict[str, Any]]:
    client = _get_supabase_client()
    if client:
        try:
            resp = (
                client.table(DISCOVERIES_TABLE)
                .select("secret_id, discovered_at")
                .eq("user_id", user_id)
                .order("discovered_at", desc=False)
                .execute()
            )
        except Exception as exc:
            raise _store_failure("listing discoveries", exc) from exc
        return [
            {"secret_id": row.get("secret_id"), "discovered_at": _parse_timestamp(row.get("discovered_at"))}
            for row in getattr(resp, "data", None) or []
            if row.get("secret_id")
        ]

    try:
        rows = (
            SecretDiscovery.query.filter_by(user_id=user_id)
            .order_by(SecretDiscovery.discovered_at.asc(), SecretDiscovery.id.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        raise _store_failure("listing discoveries", exc) from exc
    return [row.to_dict() for row in rows]


# ---------------------------------------------------------------------------
# Gallery


def save_photo(
    user_id: str,
    url: str,
    *,
    mission_id: Optional[str] = None,
    location: Optional[str] = None,
    kind: str = "user_capture",
) -> Dict[str, Any]:
    """Store gallery metadata for a capture already uploaded to object storage."""
    kind = kind if kind in PHOTO_KINDS else "user_capture"
    location = location or "Unknown"
    client = _get_supabase_client()
    if client:
        payload = {
            "user_id": user_id,
            "url": url,
            "mission_id": mission_id,
            "location": location,
            "type": kind,
            "taken_at": _now_iso(),
        }
        try:
            client.table(GALLERY_TABLE).insert(payload).execute()
        except Exception as exc:
            raise _store_failure("saving photo", exc) from exc
        return _photo_from_row(payload)

    photo = GalleryPhoto(user_id=user_id, url=url, mission_id=mission_id, location=location, kind=kind)
    try:
        db.session.add(photo)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("saving photo", exc) from exc
    return photo.to_dict()


def _photo_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "url": row.get("url"),
        "mission_id": row.get("mission_id"),
        "location": row.get("location") or "Unknown",
        "type": row.get("type") or "user_capture",
        "timestamp": _parse_timestamp(row.get("taken_at")),
    }


def list_photos(user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Gallery entries for a traveller, newest first."""
    client = _get_supabase_client()
    if client:
        try:
            query = client.table(GALLERY_TABLE).select("*").eq("user_id", user_id).order("taken_at", desc=True)
            if limit:
                query = query.limit(limit)
            resp = query.execute()
        except Exception as exc:
            raise _store_failure("listing photos", exc) from exc
        return [_photo_from_row(row) for row in getattr(resp, "data", None) or []]

    try:
        query = GalleryPhoto.query.filter_by(user_id=user_id).order_by(
            GalleryPhoto.taken_at.desc(), GalleryPhoto.id.desc()
        )
        if limit:
            query = query.limit(limit)
        rows = query.all()
    except SQLAlchemyError as exc:
        raise _store_failure("listing photos", exc) from exc
    return [row.to_dict() for row in rows]


# ---------------------------------------------------------------------------
# Profiles and rewards


def _fetch_profile_row(client, user_id: str) -> Optional[Dict[str, Any]]:
    try:
        resp = client.table(PROFILES_TABLE).select("*").eq("user_id", user_id).limit(1).execute()
    except Exception as exc:
        raise _store_failure("loading profile", exc) from exc
    rows = getattr(resp, "data", None) or []
    return rows[0] if rows else None


def _ensure_profile_sql(user_id: str) -> TravellerProfile:
    profile = db.session.get(TravellerProfile, user_id)
    if profile is None:
        profile = TravellerProfile(user_id=user_id, interests=[], **DEFAULT_STATS)
        db.session.add(profile)
        db.session.flush()
    return profile


def _stats_from_row(row: Optional[Dict[str, Any]]) -> Dict[str, int]:
    row = row or {}
    xp = int(row.get("xp") if row.get("xp") is not None else DEFAULT_STATS["xp"])
    gold = int(row.get("gold") if row.get("gold") is not None else DEFAULT_STATS["gold"])
    return {"xp": xp, "gold": gold, "level": level_for_xp(xp)}


def get_stats(user_id: str) -> Dict[str, int]:
    client = _get_supabase_client()
    if client:
        return _stats_from_row(_fetch_profile_row(client, user_id))

    try:
        profile = db.session.get(TravellerProfile, user_id)
    except SQLAlchemyError as exc:
        raise _store_failure("loading profile", exc) from exc
    return profile.stats_dict() if profile else dict(DEFAULT_STATS)


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    client = _get_supabase_client()
    if client:
        row = _fetch_profile_row(client, user_id)
        if not row:
            return None
        profile = {key: row.get(key) for key in PROFILE_FIELDS}
        profile["user_id"] = user_id
        profile["stats"] = _stats_from_row(row)
        return profile

    try:
        profile = db.session.get(TravellerProfile, user_id)
    except SQLAlchemyError as exc:
        raise _store_failure("loading profile", exc) from exc
    return profile.to_dict() if profile else None


def save_profile(user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    updates = {key: value for key, value in (fields or {}).items() if key in PROFILE_FIELDS}
    client = _get_supabase_client()
    if client:
        existing = _fetch_profile_row(client, user_id)
        payload = {"user_id": user_id, "updated_at": _now_iso(), **updates}
        if not existing:
            payload.update(DEFAULT_STATS)
        try:
            client.table(PROFILES_TABLE).upsert(payload, on_conflict="user_id").execute()
        except Exception as exc:
            raise _store_failure("saving profile", exc) from exc
        return get_profile(user_id) or payload

    try:
        profile = _ensure_profile_sql(user_id)
        for key, value in updates.items():
            setattr(profile, key, value)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("saving profile", exc) from exc
    return profile.to_dict()


def _grant_reward_supabase(client, user_id: str, xp: int, gold: int) -> Dict[str, int]:
    xp = max(0, int(xp or 0))
    gold = max(0, int(gold or 0))
    row = _fetch_profile_row(client, user_id)
    current = _stats_from_row(row)
    new_xp = current["xp"] + xp
    new_gold = current["gold"] + gold
    totals = {"xp": new_xp, "gold": new_gold, "level": level_for_xp(new_xp)}
    try:
        if row:
            client.table(PROFILES_TABLE).update({**totals, "updated_at": _now_iso()}).eq("user_id", user_id).execute()
        else:
            client.table(PROFILES_TABLE).insert({"user_id": user_id, **totals}, returning="minimal").execute()
    except Exception as exc:
        raise _store_failure("granting reward", exc) from exc
    return totals


def _apply_reward_sql(user_id: str, xp: int, gold: int) -> TravellerProfile:
    """Add to the totals inside the current transaction; the caller commits."""
    profile = _ensure_profile_sql(user_id)
    (
        db.session.query(TravellerProfile)
        .filter(TravellerProfile.user_id == user_id)
        .update(
            {
                TravellerProfile.xp: TravellerProfile.xp + max(0, int(xp or 0)),
                TravellerProfile.gold: TravellerProfile.gold + max(0, int(gold or 0)),
            },
            synchronize_session=False,
        )
    )
    db.session.refresh(profile)
    profile.level = level_for_xp(profile.xp)
    return profile


def grant_reward(user_id: str, xp: int, gold: int = 0) -> Dict[str, int]:
    """Add XP/gold to the traveller's totals and return the new totals."""
    client = _get_supabase_client()
    if client:
        return _grant_reward_supabase(client, user_id, xp, gold)

    try:
        profile = _apply_reward_sql(user_id, xp, gold)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _store_failure("granting reward", exc) from exc
    return profile.stats_dict()

"""Local database models used when Supabase is switched off."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func

from extensions import db


XP_PER_LEVEL = 100


class TravellerProfile(db.Model):
    """Running XP/gold totals plus the onboarding answers for one traveller."""

    __tablename__ = "traveller_profiles"

    user_id = db.Column(db.String(128), primary_key=True)
    display_name = db.Column(db.String(120), nullable=True)
    language = db.Column(db.String(10), nullable=False, default="ar")
    interests = db.Column(db.JSON, nullable=False, default=list)
    budget = db.Column(db.String(20), nullable=False, default="moderate")
    pace = db.Column(db.String(20), nullable=False, default="moderate")
    trip_duration = db.Column(db.Integer, nullable=False, default=3)
    onboarding_complete = db.Column(db.Boolean, nullable=False, default=False)

    xp = db.Column(db.Integer, nullable=False, default=0)
    gold = db.Column(db.Integer, nullable=False, default=100)
    level = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def stats_dict(self) -> dict:
        return {"xp": self.xp or 0, "gold": self.gold or 0, "level": self.level or 1}

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "language": self.language,
            "interests": list(self.interests or []),
            "budget": self.budget,
            "pace": self.pace,
            "trip_duration": self.trip_duration,
            "onboarding_complete": bool(self.onboarding_complete),
            "stats": self.stats_dict(),
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<TravellerProfile user_id={self.user_id!r} xp={self.xp} gold={self.gold}>"


class TripDocument(db.Model):
    """One persisted trip aggregate, stored whole as a JSON document."""

    __tablename__ = "trip_documents"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), index=True, nullable=False)
    trip_id = db.Column(db.String(128), nullable=False, default="active_trip")
    document = db.Column(db.JSON, nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "trip_id", name="uq_trip_user_trip"),
    )


class SecretDiscovery(db.Model):
    """Write-once record that a traveller found a hidden secret (unique per user/secret)."""

    __tablename__ = "secret_discoveries"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), index=True, nullable=False)
    secret_id = db.Column(db.String(128), nullable=False)
    discovered_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "secret_id", name="uq_secret_user_secret"),
    )

    def to_dict(self) -> dict:
        return {
            "secret_id": self.secret_id,
            "discovered_at": _isoformat_or_none(self.discovered_at),
        }


class GalleryPhoto(db.Model):
    """Metadata for a capture saved to the traveller's gallery; the image itself lives in object storage."""

    __tablename__ = "gallery_photos"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), index=True, nullable=False)
    url = db.Column(db.String(1024), nullable=False)
    mission_id = db.Column(db.String(128), nullable=True)
    location = db.Column(db.String(255), nullable=False, default="Unknown")
    kind = db.Column(db.String(32), nullable=False, default="user_capture")
    taken_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "mission_id": self.mission_id,
            "location": self.location,
            "type": self.kind,
            "timestamp": _isoformat_or_none(self.taken_at),
        }


def level_for_xp(xp: int) -> int:
    return max(0, int(xp or 0)) // XP_PER_LEVEL + 1


def _isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()

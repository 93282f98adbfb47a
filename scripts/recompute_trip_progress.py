#!/usr/bin/env python
"""
Re-derive mission completion, next-mission unlocks and progress for every stored trip.

Usage:
    python -m scripts.recompute_trip_progress [--dry-run]

Environment variables:
    USE_SUPABASE, SUPABASE_URL, SUPABASE_KEY   (Supabase backend)
    DATABASE_URL                               (local backend, optional)
"""

from __future__ import annotations

import sys

from app import create_app
from journey import store
from journey.progress import Trip, reconcile_trip


def recompute_all(dry_run: bool = False) -> int:
    rows = store.list_trip_rows()
    print(f"➡️ Inspecting {len(rows)} trips on the {store.backend_name()} backend.")

    repaired = 0
    for row in rows:
        document = row.get("document")
        if not isinstance(document, dict):
            print(f"⚠️ Skipping {row.get('user_id')}/{row.get('trip_id')}: document is not an object.")
            continue
        trip = Trip.from_dict(document)
        if not reconcile_trip(trip):
            continue
        repaired += 1
        print(f"🔧 {row['user_id']}/{row['trip_id']}: progress now {trip.progress}%")
        if not dry_run:
            store.save_trip(row["user_id"], trip, trip_id=row.get("trip_id") or "active_trip")

    verb = "would repair" if dry_run else "repaired"
    print(f"✅ Done: {verb} {repaired} trip(s).")
    return repaired


if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        recompute_all(dry_run="--dry-run" in sys.argv[1:])

"""Trip/mission/task state machine.

Missions move ``locked -> active -> completed`` and never back. Completing the
last open task of a mission completes it, completing a mission unlocks the
mission after it in list order, and every mutation recomputes the trip's
progress percentage. Unknown ids are tolerated: the call becomes a no-op and
the stale id is logged.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from math import floor
from typing import Any, Dict, List, Optional

from flask import current_app, has_app_context

STATUS_LOCKED = "locked"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
MISSION_STATUSES = {STATUS_LOCKED, STATUS_ACTIVE, STATUS_COMPLETED}

TASK_KINDS = {"photo", "quiz", "ar", "check"}
TASK_KIND_ALIASES = {"ar-check": "ar", "ar_check": "ar", "checklist": "check"}

ACTIVE_TRIP_ID = "active_trip"

_TASK_KEYS = {"id", "type", "kind", "label", "xp", "completed", "requirement"}
_MISSION_KEYS = {
    "id",
    "day",
    "title",
    "description",
    "status",
    "xpReward",
    "goldReward",
    "difficulty",
    "imageUrl",
    "location",
    "tasks",
}
_TRIP_KEYS = {"id", "title", "days", "missions", "progress"}


def _logger():
    if has_app_context():
        return current_app.logger
    return logging.getLogger(__name__)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return value is True or (isinstance(value, int) and not isinstance(value, bool) and value == 1)


def _extras(raw: Dict[str, Any], known: set) -> Dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in raw.items() if key not in known}


@dataclass
class Task:
    id: str
    kind: str = "check"
    xp: int = 0
    completed: bool = False
    label: str = ""
    requirement: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Task":
        kind = str(raw.get("type") or raw.get("kind") or "check")
        kind = TASK_KIND_ALIASES.get(kind, kind)
        return cls(
            id=str(raw.get("id") or ""),
            kind=kind,
            xp=max(0, _as_int(raw.get("xp"))),
            completed=parse_bool(raw.get("completed")),
            label=raw.get("label") or "",
            requirement=raw.get("requirement"),
            extra=_extras(raw, _TASK_KEYS),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(copy.deepcopy(self.extra))
        payload.update(
            {
                "id": self.id,
                "type": self.kind,
                "label": self.label,
                "xp": self.xp,
                "completed": self.completed,
            }
        )
        if self.requirement is not None:
            payload["requirement"] = self.requirement
        return payload


@dataclass
class Mission:
    id: str
    day: int = 1
    status: str = STATUS_LOCKED
    xp_reward: int = 0
    gold_reward: int = 0
    tasks: List[Task] = field(default_factory=list)
    location: Dict[str, Any] = field(default_factory=dict)
    title: str = ""
    description: str = ""
    difficulty: str = "Medium"
    image_url: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Mission":
        status = raw.get("status")
        if status not in MISSION_STATUSES:
            status = STATUS_LOCKED
        tasks = [Task.from_dict(item) for item in raw.get("tasks") or [] if isinstance(item, dict)]
        location = raw.get("location") if isinstance(raw.get("location"), dict) else {}
        return cls(
            id=str(raw.get("id") or ""),
            day=max(1, _as_int(raw.get("day"), 1)),
            status=status,
            xp_reward=_as_int(raw.get("xpReward")),
            gold_reward=_as_int(raw.get("goldReward")),
            tasks=tasks,
            location=copy.deepcopy(location),
            title=raw.get("title") or "",
            description=raw.get("description") or "",
            difficulty=raw.get("difficulty") or "Medium",
            image_url=raw.get("imageUrl") or "",
            extra=_extras(raw, _MISSION_KEYS),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(copy.deepcopy(self.extra))
        payload.update(
            {
                "id": self.id,
                "day": self.day,
                "title": self.title,
                "description": self.description,
                "status": self.status,
                "xpReward": self.xp_reward,
                "goldReward": self.gold_reward,
                "difficulty": self.difficulty,
                "imageUrl": self.image_url,
                "location": copy.deepcopy(self.location),
                "tasks": [task.to_dict() for task in self.tasks],
            }
        )
        return payload

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def all_tasks_completed(self) -> bool:
        return all(task.completed for task in self.tasks)


@dataclass
class Trip:
    id: str = ACTIVE_TRIP_ID
    days: int = 1
    missions: List[Mission] = field(default_factory=list)
    progress: int = 0
    title: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Trip":
        missions = [Mission.from_dict(item) for item in raw.get("missions") or [] if isinstance(item, dict)]
        return cls(
            id=str(raw.get("id") or ACTIVE_TRIP_ID),
            days=max(1, _as_int(raw.get("days"), 1)),
            missions=missions,
            progress=_as_int(raw.get("progress")),
            title=raw.get("title") or "",
            extra=_extras(raw, _TRIP_KEYS),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(copy.deepcopy(self.extra))
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "days": self.days,
                "missions": [mission.to_dict() for mission in self.missions],
                "progress": self.progress,
            }
        )
        return payload

    def find_mission(self, mission_id: str) -> Optional[Mission]:
        for mission in self.missions:
            if mission.id == mission_id:
                return mission
        return None

    def mission_index(self, mission_id: str) -> int:
        for index, mission in enumerate(self.missions):
            if mission.id == mission_id:
                return index
        return -1

    @property
    def completed_mission_count(self) -> int:
        return sum(1 for mission in self.missions if mission.status == STATUS_COMPLETED)


@dataclass
class ProgressUpdate:
    """What a single engine call changed; callers use it to grant rewards."""

    trip: Trip
    changed: bool = False
    completed_tasks: List[Task] = field(default_factory=list)
    completed_missions: List[Mission] = field(default_factory=list)
    unlocked_missions: List[Mission] = field(default_factory=list)
    started_missions: List[Mission] = field(default_factory=list)

    @property
    def task_xp(self) -> int:
        return sum(task.xp for task in self.completed_tasks)

    def summary(self) -> Dict[str, Any]:
        return {
            "changed": self.changed,
            "completed_tasks": [task.id for task in self.completed_tasks],
            "completed_missions": [mission.id for mission in self.completed_missions],
            "unlocked_missions": [mission.id for mission in self.unlocked_missions],
            "started_missions": [mission.id for mission in self.started_missions],
            "progress": self.trip.progress,
        }


def progress_percent(completed: int, total: int) -> int:
    """Round half up, matching the client's Math.round."""
    if total <= 0:
        return 0
    return int(floor(100 * completed / total + 0.5))


def recompute_progress(trip: Trip) -> int:
    trip.progress = progress_percent(trip.completed_mission_count, len(trip.missions))
    return trip.progress


def _unlock_after(trip: Trip, mission_id: str, update: ProgressUpdate) -> None:
    index = trip.mission_index(mission_id)
    if index < 0 or index >= len(trip.missions) - 1:
        return
    following = trip.missions[index + 1]
    if following.status == STATUS_LOCKED:
        following.status = STATUS_ACTIVE
        update.unlocked_missions.append(following)
        update.changed = True


def _mark_completed(trip: Trip, mission: Mission, update: ProgressUpdate) -> None:
    if mission.status == STATUS_COMPLETED:
        return
    mission.status = STATUS_COMPLETED
    update.completed_missions.append(mission)
    update.changed = True
    _unlock_after(trip, mission.id, update)


def set_task_completion(trip: Optional[Trip], mission_id: str, task_id: str, completed: bool) -> ProgressUpdate:
    if trip is None:
        _logger().warning("Task update for %s/%s skipped: no trip", mission_id, task_id)
        return ProgressUpdate(trip=Trip())

    update = ProgressUpdate(trip=trip)
    mission = trip.find_mission(mission_id)
    if mission is None:
        _logger().warning("Task update skipped: unknown mission %s on trip %s", mission_id, trip.id)
        recompute_progress(trip)
        return update
    task = mission.find_task(task_id)
    if task is None:
        _logger().warning("Task update skipped: unknown task %s on mission %s", task_id, mission_id)
        recompute_progress(trip)
        return update

    completed = bool(completed)
    if not completed and mission.status == STATUS_COMPLETED:
        # Reopening a task would leave a completed mission with open work.
        _logger().warning("Refusing to reopen task %s on completed mission %s", task_id, mission_id)
        recompute_progress(trip)
        return update

    if task.completed != completed:
        task.completed = completed
        update.changed = True
        if completed:
            update.completed_tasks.append(task)

    if completed and mission.all_tasks_completed:
        _mark_completed(trip, mission, update)

    recompute_progress(trip)
    return update


def start_mission(trip: Optional[Trip], mission_id: str) -> ProgressUpdate:
    if trip is None:
        _logger().warning("Start for mission %s skipped: no trip", mission_id)
        return ProgressUpdate(trip=Trip())

    update = ProgressUpdate(trip=trip)
    mission = trip.find_mission(mission_id)
    if mission is None:
        _logger().warning("Start skipped: unknown mission %s on trip %s", mission_id, trip.id)
    elif mission.status == STATUS_LOCKED:
        mission.status = STATUS_ACTIVE
        update.started_missions.append(mission)
        update.changed = True
    elif mission.status == STATUS_COMPLETED:
        _logger().warning("Start ignored: mission %s is already completed", mission_id)

    recompute_progress(trip)
    return update


def complete_mission(trip: Optional[Trip], mission_id: str) -> ProgressUpdate:
    """Force a mission to completed, ticking off any task still open."""
    if trip is None:
        _logger().warning("Completion for mission %s skipped: no trip", mission_id)
        return ProgressUpdate(trip=Trip())

    update = ProgressUpdate(trip=trip)
    mission = trip.find_mission(mission_id)
    if mission is None:
        _logger().warning("Completion skipped: unknown mission %s on trip %s", mission_id, trip.id)
        recompute_progress(trip)
        return update

    for task in mission.tasks:
        if not task.completed:
            task.completed = True
            update.completed_tasks.append(task)
            update.changed = True
    _mark_completed(trip, mission, update)
    recompute_progress(trip)
    return update


def reconcile_trip(trip: Trip) -> bool:
    """Re-derive mission completion, unlocks and progress; True when anything moved."""
    before = trip.to_dict()
    update = ProgressUpdate(trip=trip)
    for mission in list(trip.missions):
        if mission.status != STATUS_COMPLETED and mission.tasks and mission.all_tasks_completed:
            _mark_completed(trip, mission, update)
        elif mission.status == STATUS_COMPLETED:
            _unlock_after(trip, mission.id, update)
    recompute_progress(trip)
    return trip.to_dict() != before


def normalize_new_trip(trip: Trip) -> Trip:
    """Apply the creation rules: first mission active, the rest locked, nothing done yet."""
    seen = set()
    for index, mission in enumerate(trip.missions):
        if not mission.id or mission.id in seen:
            mission.id = f"mission_{index + 1}"
        seen.add(mission.id)
        mission.status = STATUS_ACTIVE if index == 0 else STATUS_LOCKED
        task_seen = set()
        for task_index, task in enumerate(mission.tasks):
            if not task.id or task.id in task_seen:
                task.id = f"{mission.id}_task_{task_index + 1}"
            task_seen.add(task.id)
            task.completed = False
    trip.days = max(trip.days, max((mission.day for mission in trip.missions), default=1))
    recompute_progress(trip)
    return trip


def build_default_trip(days: int = 3) -> Trip:
    """Cairo starter trip used when no generated itinerary is available."""
    payload = {
        "id": "default_trip",
        "title": "Historic Cairo adventure",
        "days": max(1, _as_int(days, 3)),
        "progress": 0,
        "missions": [
            {
                "id": "mission_pyramids",
                "day": 1,
                "title": "Pyramids of Giza",
                "description": "Explore the ancient wonder and uncover the secrets of the pharaohs.",
                "status": STATUS_ACTIVE,
                "xpReward": 100,
                "goldReward": 30,
                "difficulty": "Medium",
                "location": {"lat": 29.9792, "lng": 31.1342, "name": "Giza Plateau"},
                "tasks": [
                    {
                        "id": "t1",
                        "type": "photo",
                        "label": "Photograph the three pyramids",
                        "xp": 30,
                        "completed": False,
                        "requirement": "All three pyramids must appear in the photo",
                    },
                    {"id": "t2", "type": "ar", "label": "Collect the hieroglyph symbols", "xp": 25, "completed": False},
                    {"id": "t3", "type": "quiz", "label": "Pyramid history quiz", "xp": 20, "completed": False},
                    {"id": "t4", "type": "check", "label": "Visit the Sphinx", "xp": 25, "completed": False},
                ],
            },
            {
                "id": "mission_khan",
                "day": 1,
                "title": "Khan el-Khalili",
                "description": "Wander the oldest bazaar of the East and taste Egyptian coffee.",
                "status": STATUS_LOCKED,
                "xpReward": 80,
                "goldReward": 25,
                "difficulty": "Easy",
                "location": {"lat": 30.0477, "lng": 31.2625, "name": "Khan el-Khalili"},
                "tasks": [
                    {"id": "t5", "type": "photo", "label": "Photograph the Al-Ghuri gate", "xp": 20, "completed": False},
                    {"id": "t6", "type": "check", "label": "Drink coffee at El Fishawy", "xp": 30, "completed": False},
                    {"id": "t7", "type": "quiz", "label": "Bazaar history quiz", "xp": 30, "completed": False},
                ],
            },
            {
                "id": "mission_museum",
                "day": 2,
                "title": "Grand Egyptian Museum",
                "description": "Discover the treasures of Tutankhamun and thousands of artefacts.",
                "status": STATUS_LOCKED,
                "xpReward": 120,
                "goldReward": 40,
                "difficulty": "Medium",
                "location": {"lat": 29.9958, "lng": 31.1181, "name": "Grand Egyptian Museum"},
                "tasks": [
                    {"id": "t8", "type": "photo", "label": "Tutankhamun's mask", "xp": 40, "completed": False},
                    {"id": "t9", "type": "ar", "label": "Collect the symbols of the gods", "xp": 35, "completed": False},
                    {"id": "t10", "type": "quiz", "label": "Egyptian antiquities quiz", "xp": 25, "completed": False},
                    {"id": "t11", "type": "check", "label": "See the royal mummies", "xp": 20, "completed": False},
                ],
            },
        ],
    }
    return Trip.from_dict(payload)

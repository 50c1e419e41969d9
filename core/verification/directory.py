"""Read-only department and user directory loaded from a JSON document."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, time as dtime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .geo import DEFAULT_RADIUS_METERS, GeoFence, LatLng

logger = logging.getLogger(__name__)


def _parse_hhmm(value: Optional[str]) -> Optional[dtime]:
    if not value:
        return None
    try:
        hours, minutes = str(value).split(":", 1)
        return dtime(int(hours), int(minutes))
    except (TypeError, ValueError):
        logger.warning("[Directory] Invalid HH:MM value %r ignored", value)
        return None


@dataclass(frozen=True)
class ClassroomPhoto:
    url: str
    embedded: bool = False


@dataclass(frozen=True)
class ModeConfig:
    enabled: bool = True
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    def is_open(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        start = _parse_hhmm(self.start_time)
        end = _parse_hhmm(self.end_time)
        if start is None or end is None:
            return True
        current = now.time().replace(second=0, microsecond=0)
        if start <= end:
            return start <= current <= end
        # window spans midnight
        return current >= start or current <= end

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModeConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            start_time=data.get("startTime") or data.get("start_time"),
            end_time=data.get("endTime") or data.get("end_time"),
        )


@dataclass(frozen=True)
class UserProfile:
    uid: str
    name: str
    profile_image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            uid=str(data["uid"]),
            name=data.get("name") or str(data["uid"]),
            profile_image=data.get("profileImage") or data.get("profile_image") or None,
        )


@dataclass(frozen=True)
class Department:
    id: str
    name: str
    location: Optional[LatLng] = None
    radius: Optional[float] = None
    classroom_photos: List[ClassroomPhoto] = field(default_factory=list)
    student_photos: List[ClassroomPhoto] = field(default_factory=list)
    modes: Optional[Dict[int, ModeConfig]] = None

    @property
    def fence(self) -> Optional[GeoFence]:
        if self.location is None:
            return None
        return GeoFence(center=self.location, radius_meters=self.radius or DEFAULT_RADIUS_METERS)

    def embedded_classroom_urls(self) -> List[str]:
        return [photo.url for photo in self.classroom_photos if photo.embedded]

    def embedded_student_urls(self) -> List[str]:
        return [photo.url for photo in self.student_photos if photo.embedded]

    def mode_config(self, mode: int) -> ModeConfig:
        if not self.modes:
            return ModeConfig()
        return self.modes.get(mode, ModeConfig())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Department":
        location = data.get("location") or {}
        lat, lng = location.get("lat"), location.get("lng")
        # records use 0 or empty for "not configured"
        center = LatLng(float(lat), float(lng)) if lat and lng else None

        def photos(items: Optional[List[Dict[str, Any]]]) -> List[ClassroomPhoto]:
            return [ClassroomPhoto(url=p["url"], embedded=bool(p.get("embedded"))) for p in items or [] if p.get("url")]

        raw_modes = data.get("modes")
        modes = None
        if raw_modes:
            modes = {
                1: ModeConfig.from_dict(raw_modes.get("mode1")),
                2: ModeConfig.from_dict(raw_modes.get("mode2")),
            }

        radius = data.get("radius")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            location=center,
            radius=float(radius) if radius else None,
            classroom_photos=photos(data.get("classroomPhotoUrls")),
            student_photos=photos(data.get("studentsInClassroomPhotoUrls")),
            modes=modes,
        )


class Directory:
    """Institution directory: departments and users, keyed by id."""

    def __init__(self, departments: Optional[List[Department]] = None, users: Optional[List[UserProfile]] = None):
        self._lock = threading.RLock()
        self._departments: Dict[str, Department] = {}
        self._users: Dict[str, UserProfile] = {}
        self._replace(departments or [], users or [])

    def _replace(self, departments: List[Department], users: List[UserProfile]) -> None:
        with self._lock:
            self._departments = {d.id: d for d in departments}
            self._users = {u.uid: u for u in users}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Directory":
        departments = [Department.from_dict(item) for item in data.get("departments", [])]
        users = [UserProfile.from_dict(item) for item in data.get("users", [])]
        return cls(departments, users)

    @classmethod
    def load(cls, path: Path) -> "Directory":
        path = Path(path)
        if not path.exists():
            logger.warning("[Directory] %s không tồn tại, dùng thư mục rỗng", path)
            return cls()
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        directory = cls.from_dict(data)
        logger.info(
            "[Directory] Loaded %d departments, %d users from %s",
            len(directory._departments),
            len(directory._users),
            path,
        )
        return directory

    def get_department(self, department_id: str) -> Optional[Department]:
        with self._lock:
            return self._departments.get(department_id)

    def get_user(self, uid: str) -> Optional[UserProfile]:
        with self._lock:
            return self._users.get(uid)

    def departments(self) -> List[Department]:
        with self._lock:
            return list(self._departments.values())


__all__ = ["ClassroomPhoto", "Department", "Directory", "ModeConfig", "UserProfile"]

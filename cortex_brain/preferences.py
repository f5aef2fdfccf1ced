"""Per-user capability switches consulted by the router."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from .db import Database
from .errors import InputError
from .models import UserSettings, UserSettingsModel

FIELDS = ("memory_enabled", "vision_enabled", "notifications_enabled")


class PreferencesStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, user_id: str) -> UserSettings:
        """Return the user's settings, or the defaults when none are stored."""
        with self.db.session() as sess:
            model = sess.get(UserSettingsModel, user_id)
            if model is None:
                return UserSettings(user_id=user_id)
            return UserSettings(
                user_id=user_id,
                memory_enabled=bool(model.memory_enabled),
                vision_enabled=bool(model.vision_enabled),
                notifications_enabled=bool(model.notifications_enabled),
            )

    def update(self, user_id: str, **changes: Any) -> UserSettings:
        unknown = set(changes) - set(FIELDS)
        if unknown:
            raise InputError(f"unknown settings: {', '.join(sorted(unknown))}")
        current = asdict(self.get(user_id))
        for key, value in changes.items():
            if value is None:
                continue
            if not isinstance(value, bool):
                raise InputError(f"{key} must be a boolean")
            current[key] = value
        with self.db.session() as sess:
            model = sess.get(UserSettingsModel, user_id)
            if model is None:
                model = UserSettingsModel(user_id=user_id)
                sess.add(model)
            for key in FIELDS:
                setattr(model, key, current[key])
            sess.commit()
        return UserSettings(**current)


__all__ = ["PreferencesStore"]

import time
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.logging import get_logger
from models.setting import Setting

logger = get_logger(__name__)


class ConfigProvider(Protocol):
    def get_group(self, group: str) -> Dict[str, Any]:
        ...

    def update_group(self, group: str, values: Dict[str, Any]) -> None:
        ...


class SettingsTableConfigProvider:
    """Reads ``<group>.<key>`` rows from the settings table behind a short TTL cache.

    Admin writes go through ``update_group`` which drops the cached group, so a
    changed value is visible on the next read in this process and within
    ``ttl_seconds`` in every other one.
    """

    def __init__(self, session_factory: Callable[[], Session], ttl_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self._session_factory = session_factory
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, tuple[float, Dict[str, Any]]] = {}

    def get_group(self, group: str) -> Dict[str, Any]:
        cached = self._cache.get(group)
        if cached and self._clock() - cached[0] < self._ttl:
            return dict(cached[1])

        db = self._session_factory()
        try:
            rows = db.execute(select(Setting).where(Setting.group == group)).scalars().all()
            values = {row.key[len(group) + 1:]: row.value for row in rows}
        finally:
            db.close()

        self._cache[group] = (self._clock(), values)
        return dict(values)

    def update_group(self, group: str, values: Dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            for key, value in values.items():
                full_key = f"{group}.{key}"
                row = db.execute(select(Setting).where(Setting.key == full_key)).scalar_one_or_none()
                if row is None:
                    db.add(Setting(key=full_key, group=group, value=value))
                else:
                    row.value = value
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self.invalidate(group)
        logger.info("Configuration group updated", extra={"group": group, "keys": sorted(values)})

    def invalidate(self, group: Optional[str] = None) -> None:
        if group is None:
            self._cache.clear()
        else:
            self._cache.pop(group, None)


class StaticConfigProvider:
    """In-memory provider, used for local runs without a settings table and in tests."""

    def __init__(self, groups: Optional[Dict[str, Dict[str, Any]]] = None):
        self._groups = {name: dict(values) for name, values in (groups or {}).items()}

    def get_group(self, group: str) -> Dict[str, Any]:
        return dict(self._groups.get(group, {}))

    def update_group(self, group: str, values: Dict[str, Any]) -> None:
        self._groups.setdefault(group, {}).update(values)

"""
Источник текущего времени. Внедряется в сервисы, чтобы тесты могли его подменять.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Контракт часов."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Системные часы в UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Часы с фиксированным временем, которое можно сдвигать вручную."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        """
        Сдвигает время вперед.

        Args:
            **kwargs: Аргументы для timedelta (days, hours, seconds...)

        Returns:
            datetime: Новое текущее время
        """
        self.current = self.current + timedelta(**kwargs)
        return self.current


def ensure_aware(value: datetime) -> datetime:
    """Приводит наивную дату к UTC (SQLite теряет информацию о часовом поясе)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

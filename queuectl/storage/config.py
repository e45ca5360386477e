import math
from typing import Dict, Optional

from ..models.job import QueueDocument
from .store import DEFAULT_CONFIG, Store

TRUE_VALUES = ("1", "true", "yes")


class ConfigRepository:
    """Key/value settings kept alongside the jobs in the queue file"""

    def __init__(self, store: Store):
        self.store = store

    def all(self) -> Dict[str, str]:
        return dict(self.store.read().config)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.store.read().config.get(key, default)

    def set(self, key: str, value) -> None:
        def _set(document: QueueDocument):
            document.config[key] = str(value)

        self.store.mutate(_set)

    def get_bool(self, key: str, default: bool = False) -> bool:
        return parse_bool(self.get(key), default)


def parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def config_int(document: QueueDocument, key: str) -> int:
    """Integer setting read from a document already loaded under the lock"""
    return parse_int(document.config.get(key), int(DEFAULT_CONFIG[key]))


def parse_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return number if math.isfinite(number) else default


def config_float(document: QueueDocument, key: str) -> float:
    """Numeric setting that may be fractional, such as backoff_base"""
    return parse_float(document.config.get(key), float(DEFAULT_CONFIG[key]))

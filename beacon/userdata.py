"""Modifications of a user's custom properties, sent in one user_details request."""
from __future__ import annotations

from typing import Any, Callable

ARRAY_MODIFIERS = ("$push", "$pull", "$addToSet")


class CustomProperties:
    """Collects property changes until ``save()`` hands them to on_save.

    Supported modifiers: $inc, $mul, $max, $min, $setOnce, $push, $pull,
    $addToSet. Plain ``set`` overwrites whatever was recorded for the key.
    """

    def __init__(self, on_save: Callable[[dict], None]) -> None:
        self._on_save = on_save
        self._data: dict[str, Any] = {}

    @property
    def pending(self) -> dict:
        return dict(self._data)

    def _change(self, key: str, value: Any, mod: str) -> None:
        current = self._data.get(key)
        if not isinstance(current, dict):
            current = {}
            self._data[key] = current
        if mod in ARRAY_MODIFIERS:
            current.setdefault(mod, []).append(value)
        else:
            current[mod] = value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def set_once(self, key: str, value: Any) -> None:
        self._change(key, value, "$setOnce")

    def unset(self, key: str) -> None:
        self._data[key] = ""

    def increment(self, key: str) -> None:
        self._change(key, 1, "$inc")

    def increment_by(self, key: str, value: float) -> None:
        self._change(key, value, "$inc")

    def multiply(self, key: str, value: float) -> None:
        self._change(key, value, "$mul")

    def max(self, key: str, value: float) -> None:
        self._change(key, value, "$max")

    def min(self, key: str, value: float) -> None:
        self._change(key, value, "$min")

    def push(self, key: str, value: Any) -> None:
        self._change(key, value, "$push")

    def push_unique(self, key: str, value: Any) -> None:
        self._change(key, value, "$addToSet")

    def pull(self, key: str, value: Any) -> None:
        self._change(key, value, "$pull")

    def save(self) -> None:
        data, self._data = self._data, {}
        self._on_save(data)

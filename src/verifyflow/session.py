"""Request context: the key-value state a flow carries between requests.

The transport (cookie, server-side session, ...) loads one of these per
request and writes it back when ``dirty`` is set.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class RequestContext:
    def __init__(self, data: Mapping[str, Any] | None = None, *, request: Any = None):
        self._data: dict[str, Any] = dict(data or {})
        self.request = request
        self.dirty = False

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self.dirty = True

    def unset(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self.dirty = True

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def __repr__(self) -> str:
        return f"RequestContext(keys={sorted(self._data)}, dirty={self.dirty})"

"""
Layered lookup of Helm chart values.

User-supplied values win over the chart defaults. A key that is missing or
set to null in the user values falls back to the defaults; a key missing from
both resolves to ``ABSENT``, which callers must keep apart from ``False`` and
the empty string.
"""

from typing import Any, Callable, Dict, List, Optional


class _Absent:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"

    def __reduce__(self):
        return (_Absent, ())


ABSENT = _Absent()


def lookup(doc: Any, path: str) -> Any:
    """Walk a dotted path through nested mappings; null counts as absent."""
    if not isinstance(doc, dict):
        return ABSENT
    current: Any = doc
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return ABSENT
        current = current[key]
    if current is None:
        return ABSENT
    return current


def resolve(path: str, override_doc: Optional[Dict[str, Any]], default_doc: Optional[Dict[str, Any]]) -> Any:
    value = lookup(override_doc, path)
    if value is ABSENT:
        value = lookup(default_doc, path)
    return value


def _env_value(entries: Any, name: str) -> Any:
    if not isinstance(entries, list):
        return ABSENT
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            value = entry.get("value")
            return ABSENT if value is None else value
    return ABSENT


def resolve_env(path: str, name: str, override_doc: Optional[Dict[str, Any]],
                default_doc: Optional[Dict[str, Any]]) -> Any:
    """Resolve the value of the ``name`` entry of a name/value list at ``path``."""
    value = _env_value(lookup(override_doc, path), name)
    if value is ABSENT:
        value = _env_value(lookup(default_doc, path), name)
    return value


def coerce_bool(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return value


class ValueResolver:
    """Binds the merged values of a release to its lazily fetched chart defaults."""

    def __init__(self, merged: Dict[str, Any], defaults_loader: Callable[[], Dict[str, Any]]):
        self.merged = merged
        self._defaults_loader = defaults_loader
        self._defaults: Optional[Dict[str, Any]] = None

    @property
    def defaults(self) -> Dict[str, Any]:
        if self._defaults is None:
            self._defaults = self._defaults_loader() or {}
        return self._defaults

    def load_defaults(self) -> Dict[str, Any]:
        return self.defaults

    def get(self, path: str) -> Any:
        value = lookup(self.merged, path)
        if value is ABSENT:
            value = lookup(self.defaults, path)
        return value

    def get_env(self, path: str, name: str) -> Any:
        value = _env_value(lookup(self.merged, path), name)
        if value is ABSENT:
            value = _env_value(lookup(self.defaults, path), name)
        return value

    def get_bool(self, path: str) -> Any:
        return coerce_bool(self.get(path))

    def is_false(self, path: str) -> bool:
        return self.get_bool(path) is False

    def is_true(self, path: str) -> bool:
        return self.get_bool(path) is True


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]

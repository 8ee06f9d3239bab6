"""Change deduplicator - the same deletion is only audited once per flush."""
from typing import Any, Mapping, Set


class ChangeDeduplicator:
    """Per-flush set of entity hashes."""

    def __init__(self):
        self._seen: Set[str] = set()

    @staticmethod
    def hash(entity_class: type, identifier: Mapping[str, Any]) -> str:
        """Class identity followed by the repr of each identifier value, in identifier order."""
        parts = [f"{entity_class.__module__}.{entity_class.__qualname__}"]
        # repr quotes strings, so values containing spaces cannot run together
        parts.extend(repr(value) for value in identifier.values())
        return " ".join(parts)

    def add(self, key: str) -> bool:
        """Record a hash. Returns False if it was already seen."""
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def clear(self) -> None:
        self._seen.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

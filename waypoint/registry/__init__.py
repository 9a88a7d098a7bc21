"""Registry of journey type definitions."""

from __future__ import annotations

from typing import Dict, Iterator

from ..contracts import JourneyType
from ..signals import UnknownJourneyType


class JourneyTypeRegistry:
    """Maps journey type names to their definitions.

    Definitions are code, not data: a worker process rebuilds this mapping
    by importing the modules that declare its journey types.
    """

    def __init__(self) -> None:
        self._types: Dict[str, JourneyType] = {}

    def register(self, journey_type: JourneyType, replace: bool = False) -> JourneyType:
        existing = self._types.get(journey_type.name)
        if existing is not None and existing is not journey_type and not replace:
            raise ValueError(f"Journey type {journey_type.name!r} is already registered")
        self._types[journey_type.name] = journey_type
        return journey_type

    def get(self, name: str) -> JourneyType:
        try:
            return self._types[name]
        except KeyError:
            raise UnknownJourneyType(f"Journey type {name!r} is not registered") from None

    def unregister(self, name: str) -> None:
        self._types.pop(name, None)

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[JourneyType]:
        return iter(list(self._types.values()))

    def __len__(self) -> int:
        return len(self._types)


REGISTRY = JourneyTypeRegistry()


def register_journey_type(journey_type: JourneyType, replace: bool = False) -> JourneyType:
    """Add ``journey_type`` to the process-wide ``REGISTRY``."""
    return REGISTRY.register(journey_type, replace=replace)


def get_journey_type(name: str) -> JourneyType:
    return REGISTRY.get(name)


__all__ = [
    "JourneyTypeRegistry",
    "REGISTRY",
    "register_journey_type",
    "get_journey_type",
]

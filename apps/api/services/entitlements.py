"""In-memory record of premium filters already paid for in a search session."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from services.search_filters import FilterDimension


class EntitlementMemory:
    """Per-dimension paid flags for one metered search session.

    Flags start ``False`` and only flip to ``True`` through ``mark_paid``;
    ``reset`` is the only way back to ``False``.
    """

    def __init__(self, paid: Optional[Mapping[FilterDimension, bool]] = None):
        self._paid: Dict[FilterDimension, bool] = {dimension: False for dimension in FilterDimension}
        for dimension, flag in (paid or {}).items():
            self._paid[FilterDimension(dimension)] = bool(flag)

    def is_paid(self, dimension: FilterDimension) -> bool:
        return self._paid[dimension]

    def snapshot(self) -> Mapping[FilterDimension, bool]:
        return MappingProxyType(dict(self._paid))

    def mark_paid(self, dimensions: Iterable[FilterDimension]) -> None:
        for dimension in dimensions:
            self._paid[FilterDimension(dimension)] = True

    def reset(self) -> None:
        for dimension in self._paid:
            self._paid[dimension] = False

    def as_dict(self) -> Dict[str, bool]:
        return {dimension.value: flag for dimension, flag in self._paid.items()}

    def __repr__(self) -> str:
        return f"EntitlementMemory({self.as_dict()!r})"

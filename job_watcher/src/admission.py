from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple


class ReconcileKey(NamedTuple):
    """Namespace/name identity of a watched Job; the unit of work in the queue."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class AdmissionFilter:
    """Decides whether a Job notification may enter the work queue.

    Applied at the informer boundary so Jobs in other namespaces, or with
    names that do not match the configured pattern, are never cached or
    queued.
    """

    namespace: str
    name_pattern: re.Pattern[str]

    def matches_name(self, name: str | None) -> bool:
        return bool(name) and self.name_pattern.search(name) is not None

    def admit(self, namespace: str | None, name: str | None) -> bool:
        return namespace == self.namespace and self.matches_name(name)

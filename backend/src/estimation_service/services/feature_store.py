"""Task feature lookup by opaque subject reference."""

import threading
from typing import Any, Protocol

from estimation_service.contracts.ranking import SubjectRef


class FeatureLookup(Protocol):
    def get_features_by_ref(self, ref: SubjectRef) -> dict[str, Any] | None: ...


class InMemoryFeatureStore:
    """Feature snapshots keyed by (entity_type, entity_id)."""

    def __init__(self) -> None:
        self._features: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, ref: SubjectRef, features: dict[str, Any]) -> None:
        with self._lock:
            self._features[(ref.entity_type, ref.entity_id)] = dict(features)

    def get_features_by_ref(self, ref: SubjectRef) -> dict[str, Any] | None:
        with self._lock:
            features = self._features.get((ref.entity_type, ref.entity_id))
            return dict(features) if features is not None else None

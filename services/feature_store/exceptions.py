"""Feature store error taxonomy."""

from typing import Any


class FeatureStoreError(Exception):
    """Base class for feature store errors."""

    pass


class ValidationError(FeatureStoreError, ValueError):
    """Malformed registry input, rejected before any write."""

    pass


class NotFound(FeatureStoreError, LookupError):
    """Unknown feature, feature set, dataset or entity."""

    pass


class ComputeFailure(FeatureStoreError):
    """A materialization run failed; recorded in the compute log."""

    def __init__(self, feature_id: str, message: str, run_id: str | None = None):
        super().__init__(f"{feature_id}: {message}")
        self.feature_id = feature_id
        self.message = message
        self.run_id = run_id


class RunLockHeld(ComputeFailure):
    """Another run holds the unexpired lock for this feature."""

    def __init__(self, feature_id: str, holder_run_id: str | None = None):
        super().__init__(feature_id, f"run lock held by {holder_run_id}")
        self.holder_run_id = holder_run_id


class IncompleteFeatureCoverage(FeatureStoreError):
    """Requested features were absent for some entity/timestamp pairs."""

    def __init__(self, missing: list[dict[str, Any]]):
        super().__init__(f"{len(missing)} rows with missing features")
        self.missing = missing


class StaleWrite(FeatureStoreError):
    """An online update older than the value already stored."""

    def __init__(self, entity_id: str, feature_id: str):
        super().__init__(f"stale online write for {entity_id}/{feature_id}")
        self.entity_id = entity_id
        self.feature_id = feature_id


class WriteConflict(FeatureStoreError):
    """Concurrent online writers kept winning after all retries."""

    pass

"""Domain errors raised by the anomaly sources, store and pipeline."""


class AnomalyError(Exception):
    """Base class for anomaly subsystem failures."""


class DataUnavailable(AnomalyError):
    """Channel catalog or sales source could not be read."""


class AnomalyStoreError(AnomalyError):
    """The anomaly log could not be read."""


class StoreWriteFailure(AnomalyStoreError):
    """An insert or dismiss against the anomaly log failed."""

    def __init__(self, message: str, inserted: list | None = None):
        super().__init__(message)
        self.inserted = inserted or []


class AnomalyNotFound(AnomalyError):
    def __init__(self, anomaly_id):
        super().__init__(f"Anomaly {anomaly_id} not found")
        self.anomaly_id = anomaly_id

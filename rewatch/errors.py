from typing import List, Optional


class RewatchError(Exception):
    pass


class PersistenceError(RewatchError):
    def __init__(self, key: str, message: str = ""):
        super().__init__(f"Persistence failed for {key}: {message}" if message else f"Persistence failed for {key}")
        self.key = key


class BatchPersistenceError(PersistenceError):
    """Raised after a batch write finished with some keys failed. Sibling keys were written."""

    def __init__(self, failed_keys: List[str]):
        super().__init__(", ".join(failed_keys), f"{len(failed_keys)} key(s) failed")
        self.failed_keys = failed_keys


class TransportError(RewatchError):
    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class QuotaExceededError(TransportError):
    def __init__(self, message: str, per_item: bool = False):
        super().__init__(message)
        self.per_item = per_item


class TransportTimeoutError(TransportError):
    pass


class TransportOfflineError(TransportError):
    pass


class PayloadRejectedError(TransportError):
    retryable = False


class ImportValidationError(RewatchError):
    pass


class SyncDisabledError(RewatchError):
    pass

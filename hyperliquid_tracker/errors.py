from __future__ import annotations


class TrackerError(Exception):
    pass


class FetchError(TrackerError):
    retryable = True


class NetworkError(FetchError):
    pass


class RateLimited(FetchError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponse(FetchError):
    pass


class UnknownWallet(FetchError):
    retryable = False


class StorageError(TrackerError):
    pass


class DeliveryError(TrackerError):
    def __init__(self, message: str, retry_after: float | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.retryable = retryable

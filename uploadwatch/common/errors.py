"""Error taxonomy shared by the store, poller and command surface."""


class UploadWatchError(Exception):
    """Base class for every error raised by uploadwatch components."""


class TransientError(UploadWatchError):
    """Storage or network hiccup; retry later without changing state."""


class StorageUnavailable(TransientError):
    """The persistent store could not complete an operation."""


class QuotaExhausted(UploadWatchError):
    """The daily data-source budget is spent; polling resumes after reset."""


class SourceNotResolvable(UploadWatchError):
    """A user-supplied URL does not map to a trackable source."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"cannot resolve {url!r}: {reason}")
        self.url = url
        self.reason = reason


class PermanentDispatchFailure(UploadWatchError):
    """A destination refuses messages; retrying will not help."""


class CheckpointRegression(UploadWatchError):
    """A checkpoint advance would move the ordering token backwards."""

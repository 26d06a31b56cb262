"""Exceptions shared across the ingestion, clustering and retrieval layers."""


class PhotomindError(Exception):
    pass


class ModelLoadFailure(PhotomindError):
    """A model failed to load. Cached and re-raised until the provider is reset."""

    def __init__(self, model: str, reason: str):
        super().__init__(f"{model} failed to load: {reason}")
        self.model = model
        self.reason = reason


class DetectionTimeout(PhotomindError):
    def __init__(self, path: str, seconds: float):
        super().__init__(f"Face detection timed out after {seconds:.0f}s: {path}")
        self.path = path
        self.seconds = seconds


class PhotoFileNotFound(PhotomindError, FileNotFoundError):
    def __init__(self, path: str):
        super().__init__(f"Photo file not found: {path}")
        self.path = path


class StaleJob(PhotomindError):
    def __init__(self, job_id: str):
        super().__init__(f"Scan job {job_id} is stale and was marked failed")
        self.job_id = job_id


class InvalidVectorLength(PhotomindError, ValueError):
    def __init__(self, n_bytes: int):
        super().__init__(f"Vector blob of {n_bytes} bytes is not a float32 array")
        self.n_bytes = n_bytes


class StoreError(PhotomindError):
    pass


class ScanInProgress(PhotomindError):
    def __init__(self, job_id: str):
        super().__init__(f"Scan job {job_id} is still running")
        self.job_id = job_id


class UnknownJob(PhotomindError, KeyError):
    pass


class UnknownPerson(PhotomindError, KeyError):
    pass


class UnknownFace(PhotomindError, KeyError):
    pass


class JobNotResumable(PhotomindError):
    def __init__(self, job_id: str, status: str):
        super().__init__(f"Scan job {job_id} is {status} and cannot be resumed")
        self.job_id = job_id
        self.status = status

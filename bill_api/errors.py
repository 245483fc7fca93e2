class ExtractionError(Exception):
    """Base class for failures raised by the extraction pipeline."""


class DownloadError(ExtractionError):
    def __init__(self, status: int, status_text: str):
        self.status = status
        self.status_text = status_text
        super().__init__(f"Failed to download image: {status} {status_text}")


class InferenceError(ExtractionError):
    """The model call could not produce any reply text."""

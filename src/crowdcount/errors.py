from __future__ import annotations


class CrowdCountError(Exception):
    pass


class StreamConfigError(CrowdCountError):
    """The camera cannot be streamed as configured (e.g. no URL). Not retried."""


class StreamOpenError(CrowdCountError):
    """Opening the transport failed. The pipeline retries these."""


class DetectorUnavailableError(CrowdCountError):
    """The detection model is missing or could not be loaded. Not retried."""


class FrameEncodeError(CrowdCountError):
    pass


class RoiValidationError(CrowdCountError, ValueError):
    pass

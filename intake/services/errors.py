"""Exceptions raised by the ingestion pipeline."""


class IngestError(Exception):
    """Base class for ingestion failures."""


class StudyFetchError(IngestError):
    """The archive study summary could not be fetched or parsed."""

    def __init__(self, orthanc_study_id: str, reason: str):
        self.orthanc_study_id = orthanc_study_id
        self.reason = reason
        super().__init__(f"Could not fetch study {orthanc_study_id} from Orthanc: {reason}")


class MissingStudyInstanceUID(IngestError):
    def __init__(self, orthanc_study_id: str):
        self.orthanc_study_id = orthanc_study_id
        super().__init__("StudyInstanceUID not found in stable study")


class InvalidNotification(ValueError):
    """A stable-study notification payload carried no usable study id."""

    def __init__(self, body, message: str = "Invalid or missing Orthanc Study ID"):
        self.body = body
        super().__init__(message)

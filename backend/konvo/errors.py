from __future__ import annotations
from typing import Optional

STREAM_FAILURE_MESSAGE = "Failed to generate chat reply"


class AssessmentError(Exception):
	"""Base class for errors that reach the HTTP boundary."""
	status_code = 500

	def __init__(self, message: str, *, details: Optional[str] = None) -> None:
		super().__init__(message)
		self.message = message
		self.details = details

	def to_body(self) -> dict:
		body = {"error": self.message}
		if self.status_code >= 500:
			body["details"] = self.details or self.message
		return body


class ValidationError(AssessmentError):
	status_code = 400


class SubmissionNotFound(AssessmentError):
	status_code = 404

	def __init__(self, submission_id: str) -> None:
		super().__init__(f"Submission not found: {submission_id}")
		self.submission_id = submission_id


class UpstreamJudgeError(AssessmentError):
	status_code = 500


class PersistenceError(AssessmentError):
	status_code = 500


class StreamingFault(AssessmentError):
	"""The chat model stream failed; delivered in-band as an `error` event."""
	status_code = 500

	def __init__(self, details: Optional[str] = None) -> None:
		super().__init__(STREAM_FAILURE_MESSAGE, details=details)

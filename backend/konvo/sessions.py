from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .attempts import AttemptStore, attempt_count, reconstruct_answers
from .schemas import SubmissionDocument
from .settings import settings

logger = logging.getLogger(__name__)


class Phase(str, Enum):
	LOCKED = "locked"
	COLLECTING_IDENTITY = "collecting_identity"
	ANSWERING = "answering"


class CachedSession(BaseModel):
	"""The session record a browser keeps per assignment."""
	model_config = ConfigDict(populate_by_name=True)

	submission_id: Optional[str] = Field(default=None, alias="submissionId")
	preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage")
	current_question_index: int = Field(default=0, alias="currentQuestionIndex")
	phase: Optional[str] = None


@dataclass
class Resolution:
	submission: Optional[SubmissionDocument]
	source: Optional[str]
	discarded: List[str] = field(default_factory=list)


def resolve_submission(
	assignment_id: str,
	*,
	respondent_id: Optional[str] = None,
	respondent_submission: Optional[SubmissionDocument] = None,
	url_submission: Optional[SubmissionDocument] = None,
	cached_submission: Optional[SubmissionDocument] = None,
) -> Resolution:
	"""Pick the one submission to resume, highest priority first.

	The respondent's own submission for the assignment is authoritative. URL
	and cached candidates must belong to the assignment and must not belong to
	a different authenticated respondent; failing candidates are skipped.
	"""
	discarded: List[str] = []
	candidates = (
		("respondent", respondent_submission),
		("url", url_submission),
		("cache", cached_submission),
	)
	for source, candidate in candidates:
		if candidate is None:
			continue
		if candidate.assignment_id != assignment_id:
			logger.info("discarding %s submission %s: belongs to assignment %s", source, candidate.submission_id, candidate.assignment_id)
			discarded.append(source)
			continue
		if candidate.student_id and candidate.student_id != respondent_id:
			logger.info("discarding %s submission %s: belongs to another respondent", source, candidate.submission_id)
			discarded.append(source)
			continue
		return Resolution(submission=candidate, source=source, discarded=discarded)
	return Resolution(submission=None, source=None, discarded=discarded)


@dataclass
class SessionView:
	phase: Phase
	submission: Optional[SubmissionDocument] = None
	source: Optional[str] = None
	created: bool = False
	attempt_count: int = 0
	next_attempt_number: int = 1
	max_attempts: int = 1
	max_attempts_reached: bool = False
	existing_answers: Dict[int, str] = field(default_factory=dict)
	current_question_index: int = 0
	lock_reason: Optional[str] = None

	def cached_session(self) -> Optional[Dict[str, Any]]:
		if self.submission is None:
			return None
		return {
			"submissionId": self.submission.submission_id,
			"preferredLanguage": self.submission.preferred_language,
			"currentQuestionIndex": self.current_question_index,
			"phase": self.phase.value,
		}

	def to_public(self) -> Dict[str, Any]:
		return {
			"phase": self.phase.value,
			"source": self.source,
			"created": self.created,
			"submission": self.submission.to_public() if self.submission else None,
			"attempt_count": self.attempt_count,
			"next_attempt_number": self.next_attempt_number,
			"max_attempts": self.max_attempts,
			"max_attempts_reached": self.max_attempts_reached,
			"existing_answers": {str(k): v for k, v in sorted(self.existing_answers.items())},
			"current_question_index": self.current_question_index,
			"lock_reason": self.lock_reason,
			"session": self.cached_session(),
		}


def build_session_view(
	submission: SubmissionDocument,
	*,
	source: Optional[str],
	created: bool,
	max_attempts: int,
	question_count: Optional[int] = None,
	cached: Optional[CachedSession] = None,
) -> SessionView:
	# Always derived from the document just read; never carried between loads
	used = attempt_count(submission.answers)
	index = cached.current_question_index if cached is not None else 0
	if index < 0 or (question_count is not None and index >= question_count):
		index = 0
	return SessionView(
		phase=Phase.ANSWERING,
		submission=submission,
		source=source,
		created=created,
		attempt_count=used,
		next_attempt_number=used + 1,
		max_attempts=max_attempts,
		max_attempts_reached=used >= max_attempts,
		existing_answers=reconstruct_answers(submission.answers),
		current_question_index=index,
	)


class SessionReconciler:
	def __init__(self, store: AttemptStore) -> None:
		self.store = store

	def resolve(
		self,
		assignment_id: str,
		*,
		respondent_id: Optional[str] = None,
		url_submission_id: Optional[str] = None,
		cached: Optional[CachedSession] = None,
		preferred_language: Optional[str] = None,
		responder_details: Optional[Dict[str, Any]] = None,
		max_attempts: Optional[int] = None,
		question_count: Optional[int] = None,
		unlocked: bool = True,
		lock_reason: Optional[str] = None,
	) -> SessionView:
		limit = max_attempts if max_attempts is not None else settings.default_max_attempts
		if not unlocked:
			return SessionView(phase=Phase.LOCKED, max_attempts=limit, lock_reason=lock_reason)

		cached_id = cached.submission_id if cached is not None else None
		resolution = resolve_submission(
			assignment_id,
			respondent_id=respondent_id,
			respondent_submission=self.store.find_for_respondent(respondent_id, assignment_id) if respondent_id else None,
			url_submission=self.store.find(url_submission_id) if url_submission_id else None,
			cached_submission=self.store.find(cached_id) if cached_id else None,
		)
		if resolution.submission is not None:
			return build_session_view(
				resolution.submission,
				source=resolution.source,
				created=False,
				max_attempts=limit,
				question_count=question_count,
				cached=cached,
			)

		language = preferred_language or (cached.preferred_language if cached else None) or "en"
		if respondent_id:
			submission = self.store.create(assignment_id, language, student_id=respondent_id)
		elif responder_details:
			submission = self.store.create(assignment_id, language, responder_details=responder_details)
		else:
			# Public respondent who has not told us who they are yet
			return SessionView(phase=Phase.COLLECTING_IDENTITY, max_attempts=limit)
		return build_session_view(
			submission,
			source=None,
			created=True,
			max_attempts=limit,
			question_count=question_count,
		)

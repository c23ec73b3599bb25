from __future__ import annotations
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import AssessmentError, PersistenceError, SubmissionNotFound, ValidationError
from .models import ChatMessage, Submission
from .schemas import Attempt, QuestionAnswers, ScoreResult, SubmissionDocument
from .settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# DOCUMENT CODEC
# ============================================================================

def load_answers(raw: Any) -> Dict[int, QuestionAnswers]:
	"""Decode the stored `answers` document into the keyed map shape.

	Older rows hold an array of `{question_order, answer_text}`; each entry
	becomes a selected, unscored attempt 1. The array shape is never written
	back: the next write stores the map.
	"""
	if raw is None or raw == "":
		return {}
	if isinstance(raw, (str, bytes)):
		raw = json.loads(raw)
	if isinstance(raw, list):
		migrated: Dict[int, QuestionAnswers] = {}
		for legacy in raw:
			order = int(legacy["question_order"])
			migrated[order] = QuestionAnswers(
				attempts=[
					Attempt(
						attempt_number=1,
						answer_text=legacy.get("answer_text") or "",
						score=0,
						max_score=0,
						rubric_scores=[],
						overall_feedback="",
						timestamp=_now_iso(),
					)
				],
				selected_attempt=1,
			)
		return migrated
	return {int(order): QuestionAnswers.model_validate(qa) for order, qa in raw.items()}


def dump_answers(answers: Dict[int, QuestionAnswers]) -> str:
	return json.dumps(
		{str(order): qa.model_dump(mode="json", by_alias=True) for order, qa in sorted(answers.items())}
	)


def to_document(row: Submission) -> SubmissionDocument:
	details: Dict[str, Any] = {}
	if row.responder_details:
		try:
			details = json.loads(row.responder_details)
		except ValueError:
			logger.warning("submission %s has undecodable responder details", row.submission_id)
	return SubmissionDocument(
		submission_id=row.submission_id,
		assignment_id=row.assignment_id,
		student_id=row.student_id,
		responder_details=details,
		preferred_language=row.preferred_language,
		status=row.status,
		answers=load_answers(row.answers),
		version=row.version or 0,
		submitted_at=row.submitted_at,
		created_at=row.created_at,
		updated_at=row.updated_at,
	)


def generate_submission_id() -> str:
	# 6 random bytes -> 8 URL-safe characters
	return secrets.token_urlsafe(6)


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ============================================================================
# ATTEMPT SELECTION
# ============================================================================

def best_attempt(attempts: List[Attempt]) -> Optional[Attempt]:
	"""Highest score wins; the earliest attempt wins a tie."""
	best: Optional[Attempt] = None
	for attempt in attempts:
		if best is None or attempt.score > best.score:
			best = attempt
	return best


def current_attempt(qa: Optional[QuestionAnswers]) -> Optional[Attempt]:
	if qa is None:
		return None
	live = [a for a in qa.attempts if not a.stale]
	if not live:
		return None
	if qa.selected_attempt is not None:
		for a in live:
			if a.attempt_number == qa.selected_attempt:
				return a
	return live[-1]


def current_answer_text(qa: Optional[QuestionAnswers]) -> Optional[str]:
	attempt = current_attempt(qa)
	return attempt.answer_text if attempt is not None else None


def reconstruct_answers(answers: Dict[int, QuestionAnswers]) -> Dict[int, str]:
	restored: Dict[int, str] = {}
	for order, qa in answers.items():
		text = current_answer_text(qa)
		if text is not None:
			restored[order] = text
	return restored


def attempt_count(answers: Dict[int, QuestionAnswers]) -> int:
	"""Highest number of non-stale attempts on any single question."""
	return max((sum(1 for a in qa.attempts if not a.stale) for qa in answers.values()), default=0)


# ============================================================================
# STORE
# ============================================================================

class AttemptStore:
	"""Owns the submissions table. Every write re-reads the row and is guarded
	by its `version` column, so concurrent writers never lose an update."""

	def __init__(self, db: Session, *, retries: Optional[int] = None) -> None:
		self.db = db
		self.retries = max(1, retries or settings.write_retries)

	# ---- reads -------------------------------------------------------------

	def find(self, submission_id: str) -> Optional[SubmissionDocument]:
		row = self._load_row(submission_id)
		return to_document(row) if row is not None else None

	def get(self, submission_id: str) -> SubmissionDocument:
		doc = self.find(submission_id)
		if doc is None:
			raise SubmissionNotFound(submission_id)
		return doc

	def find_for_respondent(self, student_id: str, assignment_id: str) -> Optional[SubmissionDocument]:
		row = (
			self.db.query(Submission)
			.filter(Submission.student_id == student_id, Submission.assignment_id == assignment_id)
			.populate_existing()
			.first()
		)
		return to_document(row) if row is not None else None

	def list_for_assignment(self, assignment_id: str) -> List[SubmissionDocument]:
		rows = (
			self.db.query(Submission)
			.filter(Submission.assignment_id == assignment_id)
			.order_by(Submission.submitted_at.desc(), Submission.created_at.desc())
			.all()
		)
		return [to_document(r) for r in rows]

	def question_attempts(self, submission_id: str, question_order: int, *, exclude_stale: bool = False) -> List[Attempt]:
		qa = self.get(submission_id).answers.get(question_order)
		if qa is None:
			return []
		return [a for a in qa.attempts if not (exclude_stale and a.stale)]

	# ---- writes ------------------------------------------------------------

	def create(
		self,
		assignment_id: str,
		preferred_language: str,
		*,
		student_id: Optional[str] = None,
		responder_details: Optional[Dict[str, Any]] = None,
	) -> SubmissionDocument:
		if student_id:
			existing = self.find_for_respondent(student_id, assignment_id)
			if existing is not None:
				return existing
		row = Submission(
			submission_id=generate_submission_id(),
			assignment_id=assignment_id,
			student_id=student_id,
			responder_details=json.dumps(responder_details) if responder_details else None,
			preferred_language=preferred_language or "en",
			status="in_progress",
			answers="{}",
			version=0,
		)
		try:
			self.db.add(row)
			self.db.commit()
		except IntegrityError:
			# Lost a race with another device creating the same respondent's submission
			self.db.rollback()
			existing = self.find_for_respondent(student_id, assignment_id) if student_id else None
			if existing is None:
				raise PersistenceError("Failed to create submission")
			return existing
		except SQLAlchemyError as e:
			self.db.rollback()
			logger.exception("failed to create submission for assignment %s", assignment_id)
			raise PersistenceError("Failed to create submission", details=str(e)) from e
		logger.info("created submission %s for assignment %s", row.submission_id, assignment_id)
		return to_document(row)

	def append_attempt(
		self,
		submission_id: str,
		question_order: int,
		answer_text: str,
		score_result: ScoreResult,
	) -> Tuple[Attempt, SubmissionDocument]:
		def _append(doc: SubmissionDocument) -> Attempt:
			qa = doc.answers.get(question_order) or QuestionAnswers()
			attempt = Attempt(
				attempt_number=len(qa.attempts) + 1,
				answer_text=answer_text,
				score=score_result.total,
				max_score=score_result.max_score,
				rubric_scores=[s.model_copy() for s in score_result.rubric_scores],
				overall_feedback=score_result.overall_feedback,
				timestamp=_now_iso(),
				stale=False,
			)
			qa.attempts.append(attempt)
			if qa.selected_attempt is None:
				qa.selected_attempt = best_attempt(qa.attempts).attempt_number
			doc.answers[question_order] = qa
			return attempt

		attempt, doc = self._mutate(submission_id, _append)
		logger.info(
			"submission %s question %s: attempt %d scored %s/%s",
			submission_id, question_order, attempt.attempt_number, attempt.score, attempt.max_score,
		)
		return attempt, doc

	def mark_attempts_as_stale(self, submission_id: str) -> SubmissionDocument:
		def _reset(doc: SubmissionDocument) -> int:
			marked = 0
			for qa in doc.answers.values():
				for a in qa.attempts:
					if not a.stale:
						a.stale = True
						marked += 1
			return marked

		marked, doc = self._mutate(submission_id, _reset)
		logger.info("submission %s: marked %d attempts stale", submission_id, marked)
		return doc

	def select_attempt(self, submission_id: str, question_order: int, attempt_number: int) -> SubmissionDocument:
		def _select(doc: SubmissionDocument) -> None:
			qa = doc.answers.get(question_order)
			if qa is None or not any(a.attempt_number == attempt_number for a in qa.attempts):
				raise ValidationError(f"Attempt {attempt_number} does not exist for question {question_order}")
			qa.selected_attempt = attempt_number

		_, doc = self._mutate(submission_id, _select)
		return doc

	def complete(self, submission_id: str) -> SubmissionDocument:
		def _complete(doc: SubmissionDocument) -> None:
			doc.status = "completed"
			doc.submitted_at = datetime.utcnow()

		_, doc = self._mutate(submission_id, _complete)
		return doc

	# ---- internals ---------------------------------------------------------

	def _load_row(self, submission_id: str) -> Optional[Submission]:
		return (
			self.db.query(Submission)
			.filter(Submission.submission_id == submission_id)
			.populate_existing()
			.first()
		)

	def _mutate(self, submission_id: str, mutate: Callable[[SubmissionDocument], T]) -> Tuple[T, SubmissionDocument]:
		for _ in range(self.retries):
			try:
				row = self._load_row(submission_id)
				if row is None:
					raise SubmissionNotFound(submission_id)
				doc = to_document(row)
				read_version = doc.version
				result = mutate(doc)
				now = datetime.utcnow()
				res = (
					self.db.query(Submission)
					.filter(Submission.submission_id == submission_id, Submission.version == read_version)
					.update(
						{
							Submission.answers: dump_answers(doc.answers),
							Submission.status: doc.status,
							Submission.submitted_at: doc.submitted_at,
							Submission.version: read_version + 1,
							Submission.updated_at: now,
						},
						synchronize_session=False,
					)
				)
				if res == 1:
					self.db.commit()
					doc.version = read_version + 1
					doc.updated_at = now
					return result, doc
				self.db.rollback()
				logger.info("submission %s changed underneath us, retrying write", submission_id)
			except AssessmentError:
				self.db.rollback()
				raise
			except SQLAlchemyError as e:
				self.db.rollback()
				logger.exception("write to submission %s failed", submission_id)
				raise PersistenceError("Failed to save submission", details=str(e)) from e
		raise PersistenceError("Failed to save submission", details="too many concurrent updates")


# ============================================================================
# AUDIT LOG
# ============================================================================

def record_chat_message(
	db: Session,
	*,
	submission_id: Optional[str],
	assignment_id: str,
	question_order: int,
	role: str,
	content: str,
	attempt_number: Optional[int] = None,
) -> None:
	"""Best-effort audit row for one chat turn. Never raises."""
	try:
		db.add(
			ChatMessage(
				submission_id=submission_id,
				assignment_id=assignment_id,
				question_order=question_order,
				role=role,
				content=content,
				attempt_number=attempt_number,
			)
		)
		db.commit()
	except Exception:
		logger.warning("failed to log %s chat message for assignment %s", role, assignment_id, exc_info=True)
		try:
			db.rollback()
		except Exception:
			pass

from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from fastapi import Depends
from sqlalchemy.orm import Session

from . import sse
from .attempts import AttemptStore, best_attempt, record_chat_message
from .db import SessionLocal, get_db
from .errors import STREAM_FAILURE_MESSAGE, PersistenceError, SubmissionNotFound, UpstreamJudgeError, ValidationError
from .llm_client import LLMClient, get_llm_client
from .orchestrator import ConversationOrchestrator
from .prompts import build_runtime_context, build_system_instructions, conversation_start_template, interpolate_prompt
from .schemas import ConversationMessage, RubricItem
from .scoring import RubricScorer
from .sessions import CachedSession, SessionReconciler

logger = logging.getLogger(__name__)

MISSING_FIELDS = "Missing required fields"


def _require(**fields: Any) -> None:
	missing = [name for name, value in fields.items() if value is None or value == "" or value == []]
	if missing:
		logger.info("rejecting request, missing fields: %s", ", ".join(missing))
		raise ValidationError(MISSING_FIELDS)


class AssessmentFacade:
	"""Everything the HTTP layer may do to an assessment, per request."""

	def __init__(
		self,
		db: Session,
		*,
		client_factory: Callable[[], LLMClient] = get_llm_client,
		session_factory: Callable[[], Session] = SessionLocal,
	) -> None:
		self.db = db
		self.store = AttemptStore(db)
		self.reconciler = SessionReconciler(self.store)
		self.client_factory = client_factory
		self.session_factory = session_factory

	# ---- turn exchange -----------------------------------------------------

	def exchange_turn(
		self,
		*,
		assignment_id: str,
		question_order: Optional[int],
		question_prompt: str,
		rubric: Sequence[RubricItem],
		language: str,
		messages: Sequence[ConversationMessage],
		submission_id: Optional[str] = None,
		attempt_number: Optional[int] = None,
		system_prompt: Optional[str] = None,
		greeting: Optional[str] = None,
		shared_context: Optional[str] = None,
		expected_answer: Optional[str] = None,
		mode: str = "chat",
		max_attempts: Optional[int] = None,
		total_questions: Optional[int] = None,
	) -> AsyncIterator[str]:
		"""Validate, log the respondent's latest message and return the SSE body."""
		_require(assignment_id=assignment_id, question_order=question_order, question_prompt=question_prompt, rubric=rubric, language=language)
		if messages is None:
			raise ValidationError(MISSING_FIELDS)

		context = build_runtime_context(
			language=language,
			question_prompt=question_prompt,
			rubric=rubric,
			expected_answer=expected_answer,
			max_attempts=max_attempts,
			total_questions=total_questions,
			attempt_number=attempt_number,
			question_order=question_order,
		)
		system_instructions = build_system_instructions(
			context,
			system_prompt=system_prompt,
			shared_context=shared_context,
			expected_answer=expected_answer,
			mode=mode,
		)
		turns = [m for m in messages if m.content and m.content.strip()]
		opening = None
		if not turns:
			opening = interpolate_prompt(conversation_start_template(question_order, greeting), context)

		respondent_turns = [m for m in turns if m.role == "respondent"]
		if respondent_turns:
			record_chat_message(
				self.db,
				submission_id=submission_id,
				assignment_id=assignment_id,
				question_order=question_order,
				role="student",
				content=respondent_turns[-1].content,
				attempt_number=attempt_number,
			)

		def _log_reply(reply: str) -> None:
			if not reply.strip():
				return
			db = self.session_factory()
			try:
				record_chat_message(
					db,
					submission_id=submission_id,
					assignment_id=assignment_id,
					question_order=question_order,
					role="assistant",
					content=reply,
					attempt_number=attempt_number,
				)
			finally:
				db.close()

		return self._stream(system_instructions, turns, opening, _log_reply)

	async def _stream(
		self,
		system_instructions: str,
		turns: List[ConversationMessage],
		opening: Optional[str],
		on_complete: Callable[[str], None],
	) -> AsyncIterator[str]:
		try:
			client = self.client_factory()
		except Exception:
			logger.exception("chat model client unavailable")
			yield sse.encode_event(sse.error(STREAM_FAILURE_MESSAGE))
			return
		events = ConversationOrchestrator(client).stream_turn(
			system_instructions,
			turns,
			opening_instruction=opening,
			on_complete=on_complete,
		)
		try:
			async for event in events:
				yield sse.encode_event(event)
		finally:
			# Close the turn (and its upstream HTTP stream) before the client
			await events.aclose()
			await client.aclose()

	# ---- evaluation --------------------------------------------------------

	async def evaluate(
		self,
		*,
		submission_id: str,
		question_order: Optional[int],
		answer_text: str,
		question_prompt: str,
		rubric: Sequence[RubricItem],
		language: str,
	) -> Dict[str, Any]:
		_require(
			submission_id=submission_id,
			question_order=question_order,
			answer_text=(answer_text or "").strip(),
			question_prompt=question_prompt,
			rubric=rubric,
			language=language,
		)
		if self.store.find(submission_id) is None:
			raise PersistenceError("Failed to fetch submission", details=f"unknown submission {submission_id}")

		try:
			client = self.client_factory()
		except Exception as e:
			logger.exception("judge model client unavailable")
			raise UpstreamJudgeError("Failed to evaluate answer", details=str(e)) from e
		try:
			result = await RubricScorer(client).score(question_prompt, rubric, answer_text, language)
		finally:
			await client.aclose()

		try:
			attempt, submission = self.store.append_attempt(submission_id, question_order, answer_text, result)
		except SubmissionNotFound as e:
			raise PersistenceError("Failed to save evaluation", details=str(e)) from e
		return {
			"success": True,
			"attempt": attempt.model_dump(mode="json", by_alias=True),
			"submission": submission.to_public(),
		}

	# ---- submissions -------------------------------------------------------

	def create_submission(
		self,
		assignment_id: str,
		preferred_language: str,
		*,
		student_id: Optional[str] = None,
		responder_details: Optional[Dict[str, Any]] = None,
	) -> Dict[str, Any]:
		_require(assignment_id=assignment_id)
		if not student_id and not responder_details:
			raise ValidationError("Responder details are required for public submissions")
		doc = self.store.create(
			assignment_id,
			preferred_language,
			student_id=student_id,
			responder_details=responder_details,
		)
		return doc.to_public()

	def get_submission(self, submission_id: str) -> Dict[str, Any]:
		return self.store.get(submission_id).to_public()

	def list_submissions(self, assignment_id: str) -> List[Dict[str, Any]]:
		return [doc.to_public() for doc in self.store.list_for_assignment(assignment_id)]

	def resolve_session(
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
	) -> Dict[str, Any]:
		_require(assignment_id=assignment_id)
		view = self.reconciler.resolve(
			assignment_id,
			respondent_id=respondent_id,
			url_submission_id=url_submission_id,
			cached=cached,
			preferred_language=preferred_language,
			responder_details=responder_details,
			max_attempts=max_attempts,
			question_count=question_count,
			unlocked=unlocked,
			lock_reason=lock_reason,
		)
		return view.to_public()

	def reset_attempts(self, submission_id: str) -> Dict[str, Any]:
		return self.store.mark_attempts_as_stale(submission_id).to_public()

	def select_attempt(self, submission_id: str, question_order: int, attempt_number: int) -> Dict[str, Any]:
		return self.store.select_attempt(submission_id, question_order, attempt_number).to_public()

	def question_attempts(self, submission_id: str, question_order: int, *, exclude_stale: bool = False) -> Dict[str, Any]:
		attempts = self.store.question_attempts(submission_id, question_order, exclude_stale=exclude_stale)
		best = best_attempt([a for a in attempts if not a.stale])
		return {
			"attempts": [a.model_dump(mode="json", by_alias=True) for a in attempts],
			"best_attempt": best.attempt_number if best is not None else None,
		}

	def complete_submission(self, submission_id: str) -> Dict[str, Any]:
		return self.store.complete(submission_id).to_public()


def get_facade(db: Session = Depends(get_db)) -> AssessmentFacade:
	return AssessmentFacade(db)

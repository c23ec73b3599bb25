from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..facade import AssessmentFacade, get_facade
from ..sessions import CachedSession
from .auth import User, get_optional_user, require_teacher

router = APIRouter(prefix="/api", tags=["submissions"])


class CreateSubmissionRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	assignment_id: str = Field(alias="assignmentId")
	preferred_language: str = Field(default="en", alias="preferredLanguage")
	# Collected by the public responder form; ignored for authenticated respondents
	responder_details: Optional[Dict[str, Any]] = Field(default=None, alias="responderDetails")


class ResolveSessionRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	assignment_id: str = Field(alias="assignmentId")
	# `sid` query parameter of the page the respondent opened
	url_submission_id: Optional[str] = Field(default=None, alias="urlSubmissionId")
	cached_session: Optional[CachedSession] = Field(default=None, alias="cachedSession")
	preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage")
	responder_details: Optional[Dict[str, Any]] = Field(default=None, alias="responderDetails")
	max_attempts: Optional[int] = Field(default=None, alias="maxAttempts")
	question_count: Optional[int] = Field(default=None, alias="questionCount")
	# Opaque verdict of the content-unlock gate
	unlocked: bool = True
	lock_reason: Optional[str] = Field(default=None, alias="lockReason")


class SelectAttemptRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	attempt_number: int = Field(alias="attemptNumber")


@router.post("/submissions", status_code=201)
async def create_submission(
	req: CreateSubmissionRequest,
	user: Optional[User] = Depends(get_optional_user),
	facade: AssessmentFacade = Depends(get_facade),
):
	return facade.create_submission(
		req.assignment_id,
		req.preferred_language,
		student_id=user.user_id if user else None,
		responder_details=None if user else req.responder_details,
	)


@router.post("/submissions/resolve")
async def resolve_session(
	req: ResolveSessionRequest,
	user: Optional[User] = Depends(get_optional_user),
	facade: AssessmentFacade = Depends(get_facade),
):
	return facade.resolve_session(
		req.assignment_id,
		respondent_id=user.user_id if user else None,
		url_submission_id=req.url_submission_id,
		cached=req.cached_session,
		preferred_language=req.preferred_language,
		responder_details=None if user else req.responder_details,
		max_attempts=req.max_attempts,
		question_count=req.question_count,
		unlocked=req.unlocked,
		lock_reason=req.lock_reason,
	)


@router.get("/submissions/{submission_id}")
async def get_submission(submission_id: str, facade: AssessmentFacade = Depends(get_facade)):
	# Possession of the id is the credential for public respondents
	return facade.get_submission(submission_id)


@router.get("/submissions/{submission_id}/questions/{question_order}/attempts")
async def question_attempts(
	submission_id: str,
	question_order: int,
	exclude_stale: bool = False,
	facade: AssessmentFacade = Depends(get_facade),
):
	return facade.question_attempts(submission_id, question_order, exclude_stale=exclude_stale)


@router.post("/submissions/{submission_id}/complete")
async def complete_submission(submission_id: str, facade: AssessmentFacade = Depends(get_facade)):
	return facade.complete_submission(submission_id)


# ---- grader actions ----------------------------------------------------------

@router.get("/assignments/{assignment_id}/submissions")
async def list_submissions(
	assignment_id: str,
	teacher: User = Depends(require_teacher),
	facade: AssessmentFacade = Depends(get_facade),
):
	return {"submissions": facade.list_submissions(assignment_id)}


@router.post("/submissions/{submission_id}/reset")
async def reset_attempts(
	submission_id: str,
	teacher: User = Depends(require_teacher),
	facade: AssessmentFacade = Depends(get_facade),
):
	return facade.reset_attempts(submission_id)


@router.post("/submissions/{submission_id}/questions/{question_order}/select")
async def select_attempt(
	submission_id: str,
	question_order: int,
	req: SelectAttemptRequest,
	teacher: User = Depends(require_teacher),
	facade: AssessmentFacade = Depends(get_facade),
):
	return facade.select_attempt(submission_id, question_order, req.attempt_number)

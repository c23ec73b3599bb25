from __future__ import annotations
import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..facade import AssessmentFacade, get_facade
from ..schemas import RubricItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["evaluate"])


class EvaluateRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	submission_id: str = Field(alias="submissionId")
	question_order: int = Field(alias="questionOrder")
	answer_text: str = Field(alias="answerText")
	question_prompt: str = Field(alias="questionPrompt")
	rubric: List[RubricItem]
	# Language code for feedback (e.g. "en", "hi", "kn")
	language: str


@router.post("/evaluate")
async def evaluate(req: EvaluateRequest, facade: AssessmentFacade = Depends(get_facade)):
	logger.info(
		"evaluate submission=%s question=%s answer_len=%d rubric_items=%d language=%s",
		req.submission_id, req.question_order, len(req.answer_text or ""), len(req.rubric), req.language,
	)
	return await facade.evaluate(
		submission_id=req.submission_id,
		question_order=req.question_order,
		answer_text=req.answer_text,
		question_prompt=req.question_prompt,
		rubric=req.rubric,
		language=req.language,
	)

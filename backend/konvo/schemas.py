from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Number = Union[int, float]


class RubricItem(BaseModel):
	item: str
	points: Number = Field(ge=0)


class RubricScore(BaseModel):
	# `item` is a display label only; rubric rows are joined by position
	item: str
	points_earned: Number
	points_possible: Number
	feedback: str = ""


class ScoreResult(BaseModel):
	rubric_scores: List[RubricScore]
	overall_feedback: str = ""

	@property
	def total(self) -> Number:
		return sum(s.points_earned for s in self.rubric_scores)

	@property
	def max_score(self) -> Number:
		return sum(s.points_possible for s in self.rubric_scores)


class Attempt(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	attempt_number: int
	answer_text: str
	score: Number
	max_score: Number
	rubric_scores: List[RubricScore] = Field(default_factory=list)
	overall_feedback: str = Field(default="", alias="evaluation_feedback")
	timestamp: str
	stale: bool = False


class QuestionAnswers(BaseModel):
	attempts: List[Attempt] = Field(default_factory=list)
	selected_attempt: Optional[int] = None


class SubmissionDocument(BaseModel):
	submission_id: str
	assignment_id: str
	student_id: Optional[str] = None
	responder_details: Dict[str, Any] = Field(default_factory=dict)
	preferred_language: str = "en"
	status: Literal["in_progress", "completed"] = "in_progress"
	answers: Dict[int, QuestionAnswers] = Field(default_factory=dict)
	version: int = 0
	submitted_at: Optional[datetime] = None
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	def to_public(self) -> Dict[str, Any]:
		data = self.model_dump(mode="json", by_alias=True, exclude={"answers", "version"})
		data["answers"] = {
			str(order): qa.model_dump(mode="json", by_alias=True)
			for order, qa in sorted(self.answers.items())
		}
		return data


class ConversationMessage(BaseModel):
	role: Literal["respondent", "assistant"]
	content: str = ""


class TerminationSignal(BaseModel):
	reason: Literal["refusal", "thorough"]
	closing_message: str = ""

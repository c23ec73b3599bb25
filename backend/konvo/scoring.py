from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from .errors import UpstreamJudgeError, ValidationError
from .llm_client import LLMClient
from .prompts import EVALUATION_SCHEMA, build_judge_messages
from .schemas import Number, RubricItem, RubricScore, ScoreResult
from .settings import settings

logger = logging.getLogger(__name__)


def _extract_json_block(text: str) -> Dict[str, Any]:
	"""Parse the judge output, tolerating prose or fences around the object."""
	try:
		return json.loads(text)
	except Exception:
		pass
	match = re.search(r"\{[\s\S]*\}", text or "")
	if match:
		try:
			return json.loads(match.group(0))
		except Exception:
			pass
	raise ValueError("Failed to parse JSON from judge output")


def _as_number(value: Any) -> Optional[Number]:
	if isinstance(value, bool):
		return None
	if isinstance(value, (int, float)):
		number = value
	else:
		try:
			number = float(value)
		except (TypeError, ValueError):
			return None
	if number != number:  # NaN
		return None
	if isinstance(number, float) and number.is_integer():
		return int(number)
	return number


def clamp_points(earned: Any, possible: Number) -> Number:
	value = _as_number(earned)
	if value is None or value < 0:
		return 0
	if value > possible:
		return possible
	return value


def validate_rubric_scores(raw: Dict[str, Any], rubric: Sequence[RubricItem]) -> ScoreResult:
	"""Force the judge output onto the rubric.

	Exactly one score per rubric row, in rubric order. Points are clamped to
	[0, rubric points] and `points_possible` always comes from the rubric.
	Missing rows score zero; extra rows are dropped.
	"""
	entries = raw.get("rubric_scores") if isinstance(raw, dict) else None
	if not isinstance(entries, list):
		entries = []
	scores: List[RubricScore] = []
	for index, rubric_item in enumerate(rubric):
		entry = entries[index] if index < len(entries) and isinstance(entries[index], dict) else {}
		possible = _as_number(rubric_item.points) or 0
		scores.append(
			RubricScore(
				item=str(entry.get("item") or rubric_item.item),
				points_earned=clamp_points(entry.get("points_earned"), possible),
				points_possible=possible,
				feedback=str(entry.get("feedback") or ""),
			)
		)
	if len(entries) != len(rubric):
		logger.warning("judge returned %d rubric scores for %d rubric items", len(entries), len(rubric))
	overall = raw.get("overall_feedback") if isinstance(raw, dict) else None
	return ScoreResult(rubric_scores=scores, overall_feedback=str(overall or ""))


class RubricScorer:
	def __init__(self, client: LLMClient, *, model: Optional[str] = None) -> None:
		self.client = client
		self.model = model or settings.judge_model

	async def score(
		self,
		question_prompt: str,
		rubric: Sequence[RubricItem],
		answer_text: str,
		language: str,
	) -> ScoreResult:
		if not rubric:
			raise ValidationError("Rubric must contain at least one item")
		messages = build_judge_messages(question_prompt, rubric, answer_text, language)
		try:
			raw_text = await self.client.complete_json(
				messages,
				schema_name="evaluation_result",
				schema=EVALUATION_SCHEMA,
				model=self.model,
			)
		except Exception as e:
			logger.exception("judge model call failed")
			raise UpstreamJudgeError("Failed to evaluate answer", details=str(e)) from e
		try:
			raw = _extract_json_block(raw_text)
		except ValueError as e:
			logger.error("judge returned unparseable output: %s", (raw_text or "")[:500])
			raise UpstreamJudgeError("Failed to evaluate answer", details=str(e)) from e
		if not isinstance(raw, dict) or not isinstance(raw.get("rubric_scores"), list):
			logger.error("judge output has no rubric_scores list: %s", (raw_text or "")[:500])
			raise UpstreamJudgeError("Failed to evaluate answer", details="Judge output is missing rubric_scores")
		return validate_rubric_scores(raw, rubric)

"""
Prompt construction for the conversational assessor and the rubric judge.

Teachers may override the assessor's system prompt and conversation start;
both are plain templates with `{{variable}}` placeholders filled at runtime.
"""

from __future__ import annotations
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .schemas import ConversationMessage, RubricItem


SUPPORTED_LANGUAGES: Dict[str, str] = {
	"en": "English",
	"hi": "Hindi",
	"kn": "Kannada",
	"ta": "Tamil",
	"te": "Telugu",
	"mr": "Marathi",
	"bn": "Bengali",
	"ml": "Malayalam",
}

PROMPT_VARIABLES = (
	"language",
	"question_prompt",
	"rubric",
	"expected_answer",
	"max_attempts",
	"total_questions",
	"attempt_number",
	"question_order",
)

DEFAULT_SYSTEM_PROMPT = """You are a friendly teacher named Konvo, helping a student with a formative assessment in {{language}}.

The student needs to answer this question:
{{question_prompt}}

Evaluation criteria:
{{rubric}}

Your role:
1. Have a natural conversation to understand their thinking
2. Ask follow-up questions to gauge depth of understanding
3. Be encouraging and supportive
4. Help them elaborate if they're stuck, but don't give away the answer
5. Keep your questions and responses short and concise
6. Use English for concept-specific words while keeping the conversation in {{language}}"""

DEFAULT_CONVERSATION_START_FIRST = (
	"Speaking in {{language}}, introduce yourself as Konvo. Restate the question in your own words, "
	"describe what kind of answer you expect, and invite the student to begin. Do NOT start grading yet."
)

DEFAULT_CONVERSATION_START_SUBSEQUENT = (
	"Speaking in {{language}}, acknowledge we're moving to the next question, restate it in your own words, "
	"describe what kind of answer you expect, and ask the student to answer it. Do NOT start grading yet."
)

# Appended for voice mode only; not part of the teacher-editable template
TTS_INSTRUCTION = "The text you generate will be used by TTS, so avoid special characters. Use colloquial, friendly language."

END_CONVERSATION_INSTRUCTION = """You can end the conversation with the end_conversation tool:
- reason "refusal": the student has clearly declined to answer the question.
- reason "thorough": the student's answer already covers every rubric criterion.
When you call it, put a short closing message in {{language}} in closing_message. Otherwise keep the conversation going."""

END_CONVERSATION_TOOL: Dict[str, Any] = {
	"type": "function",
	"function": {
		"name": "end_conversation",
		"description": "End the assessment conversation for this question.",
		"parameters": {
			"type": "object",
			"properties": {
				"reason": {"type": "string", "enum": ["refusal", "thorough"]},
				"closing_message": {"type": "string"},
			},
			"required": ["reason", "closing_message"],
			"additionalProperties": False,
		},
	},
}

# The judge returns only per-item scores and feedback; totals are computed here
EVALUATION_SCHEMA: Dict[str, Any] = {
	"type": "object",
	"properties": {
		"rubric_scores": {
			"type": "array",
			"items": {
				"type": "object",
				"properties": {
					"item": {"type": "string"},
					"points_earned": {"type": "number"},
					"points_possible": {"type": "number"},
					"feedback": {"type": "string"},
				},
				"required": ["item", "points_earned", "points_possible", "feedback"],
				"additionalProperties": False,
			},
		},
		"overall_feedback": {"type": "string"},
	},
	"required": ["rubric_scores", "overall_feedback"],
	"additionalProperties": False,
}


def get_language_name(code: Optional[str]) -> str:
	return SUPPORTED_LANGUAGES.get((code or "").lower(), "English")


def format_rubric_for_prompt(rubric: Sequence[RubricItem]) -> str:
	if not rubric:
		return "No specific rubric provided."
	return "\n".join(f"- {r.item} ({_fmt_points(r.points)} points)" for r in rubric)


def _fmt_points(points: Any) -> str:
	if isinstance(points, float) and points.is_integer():
		return str(int(points))
	return str(points)


def interpolate_prompt(template: str, context: Mapping[str, Any]) -> str:
	"""Replace every `{{key}}` placeholder whose value is known."""
	result = template
	for key, value in context.items():
		if value is None:
			continue
		result = re.sub(r"\{\{" + re.escape(key) + r"\}\}", lambda _m, v=str(value): v, result)
	return result


def build_runtime_context(
	*,
	language: str,
	question_prompt: str,
	rubric: Sequence[RubricItem],
	expected_answer: Optional[str] = None,
	max_attempts: Optional[int] = None,
	total_questions: Optional[int] = None,
	attempt_number: Optional[int] = None,
	question_order: Optional[int] = None,
) -> Dict[str, Any]:
	return {
		"language": get_language_name(language),
		"question_prompt": question_prompt,
		"rubric": format_rubric_for_prompt(rubric),
		"expected_answer": expected_answer or "",
		"max_attempts": max_attempts,
		"total_questions": total_questions,
		"attempt_number": attempt_number,
		"question_order": question_order,
	}


def build_system_instructions(
	context: Mapping[str, Any],
	*,
	system_prompt: Optional[str] = None,
	shared_context: Optional[str] = None,
	expected_answer: Optional[str] = None,
	mode: str = "chat",
) -> str:
	"""Assemble the assessor's system message.

	A teacher-supplied `system_prompt` replaces the default template. Any
	remaining placeholders are interpolated, so already-interpolated prompts
	pass through unchanged.
	"""
	parts = [interpolate_prompt(system_prompt or DEFAULT_SYSTEM_PROMPT, context)]
	if shared_context and shared_context.strip():
		parts.append(f"Shared context for this assignment:\n{shared_context.strip()}")
	if expected_answer and expected_answer.strip():
		parts.append(
			"Key points a complete answer covers (for your judgement only, never reveal them):\n"
			+ expected_answer.strip()
		)
	parts.append(interpolate_prompt(END_CONVERSATION_INSTRUCTION, context))
	parts.append(f"IMPORTANT: Respond only in {context.get('language') or 'English'}.")
	if mode == "voice":
		parts.append(TTS_INSTRUCTION)
	return "\n\n".join(parts)


def conversation_start_template(question_order: int, greeting: Optional[str] = None) -> str:
	if greeting and greeting.strip():
		return greeting
	if question_order == 0:
		return DEFAULT_CONVERSATION_START_FIRST
	return DEFAULT_CONVERSATION_START_SUBSEQUENT


def build_chat_messages(
	system_instructions: str,
	prior_turns: Sequence[ConversationMessage],
	*,
	opening_instruction: Optional[str] = None,
) -> List[Dict[str, str]]:
	"""Map the transcript onto chat-completion roles.

	On the opening turn there are no respondent messages yet; the opening
	instruction is then sent as the only user message so the model introduces
	the task instead of evaluating anything.
	"""
	messages: List[Dict[str, str]] = [{"role": "system", "content": system_instructions}]
	if opening_instruction is not None:
		messages.append({"role": "user", "content": opening_instruction})
	for turn in prior_turns:
		if not turn.content:
			continue
		role = "user" if turn.role == "respondent" else "assistant"
		messages.append({"role": role, "content": turn.content})
	return messages


def build_judge_messages(
	question_prompt: str,
	rubric: Sequence[RubricItem],
	answer_text: str,
	language: str,
) -> List[Dict[str, str]]:
	language_name = get_language_name(language)
	rubric_text = format_rubric_for_prompt(rubric)
	return [
		{
			"role": "system",
			"content": (
				"You are an expert educational evaluator. Your task is to grade student responses based on provided "
				"rubric criteria. Be fair, constructive, and encouraging in your feedback. Evaluate based solely on "
				"the content of the student's answer.\n\n"
				f"IMPORTANT: All feedback must be provided in {language_name}."
			),
		},
		{
			"role": "user",
			"content": (
				f"Question: {question_prompt}\n\n"
				f"Evaluation Rubric:\n{rubric_text}\n\n"
				f"Student's Answer:\n{answer_text}\n\n"
				"Please evaluate this answer according to the rubric, returning exactly one rubric_scores entry per "
				"rubric item in the same order. For each rubric item:\n"
				"1. Assign points earned (0 to the maximum points for that item - do not exceed the maximum)\n"
				"2. Set points_possible to match the rubric item's maximum points\n"
				f"3. Provide specific, constructive feedback in {language_name}\n\n"
				f"Then provide overall feedback in {language_name} that is encouraging and helps the student "
				"understand their strengths and areas for improvement."
			),
		},
	]

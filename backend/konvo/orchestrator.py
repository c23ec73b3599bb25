"""
Conversation Orchestrator
=========================

Drives one assistant turn of a chat/voice assessment as a stream of SSE
events. The orchestrator keeps no state between turns: every call receives
the whole transcript so far.

The model has exactly one tool, `end_conversation`. Tool-call arguments stream
in as JSON fragments; they are accumulated apart from the visible text and
parsed only once the model's stream has ended. Invalid arguments are logged
and the turn finishes as a plain text reply.
"""

from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from . import sse
from .errors import STREAM_FAILURE_MESSAGE, StreamingFault
from .llm_client import LLMClient, ToolCallFragment
from .prompts import END_CONVERSATION_TOOL, build_chat_messages
from .schemas import ConversationMessage, TerminationSignal
from .settings import settings

logger = logging.getLogger(__name__)

END_CONVERSATION = "end_conversation"


class ToolCallAccumulator:
	"""Collects streamed tool-call fragments by call index."""

	def __init__(self) -> None:
		self._calls: Dict[int, Dict[str, Any]] = {}

	def add(self, fragment: ToolCallFragment) -> None:
		call = self._calls.setdefault(fragment.index, {"id": None, "name": None, "arguments": []})
		if fragment.id:
			call["id"] = fragment.id
		if fragment.name:
			call["name"] = fragment.name
		if fragment.arguments:
			call["arguments"].append(fragment.arguments)

	def arguments_for(self, name: str) -> Optional[str]:
		for index in sorted(self._calls):
			call = self._calls[index]
			if call["name"] == name:
				return "".join(call["arguments"])
		return None

	def termination(self) -> Optional[TerminationSignal]:
		raw = self.arguments_for(END_CONVERSATION)
		if raw is None:
			return None
		try:
			return TerminationSignal.model_validate(json.loads(raw))
		except (ValueError, PydanticValidationError) as e:
			logger.warning("ignoring malformed end_conversation arguments %r: %s", raw[:200], e)
			return None


def aggregate_answer_text(messages: Sequence[ConversationMessage]) -> str:
	"""The candidate answer of a chat: every respondent turn, blank-line separated."""
	return "\n\n".join(
		m.content.strip() for m in messages if m.role == "respondent" and m.content and m.content.strip()
	)


class ConversationOrchestrator:
	def __init__(self, client: LLMClient, *, model: Optional[str] = None) -> None:
		self.client = client
		self.model = model or settings.chat_model

	async def stream_turn(
		self,
		system_instructions: str,
		prior_turns: Sequence[ConversationMessage],
		*,
		opening_instruction: Optional[str] = None,
		on_complete: Optional[Callable[[str], None]] = None,
	) -> AsyncIterator[Dict[str, Any]]:
		"""Yield the events of one assistant turn.

		`opening_instruction` is set only for the first turn of an attempt; the
		end_conversation tool is offered only once the respondent has spoken.
		`on_complete` receives the full visible reply when the turn finishes
		normally; it is not called for failed or cancelled turns.
		"""
		messages = build_chat_messages(system_instructions, prior_turns, opening_instruction=opening_instruction)
		respondent_spoke = any(t.role == "respondent" and t.content.strip() for t in prior_turns)
		tools = [END_CONVERSATION_TOOL] if respondent_spoke else None

		accumulator = ToolCallAccumulator()
		delivered: List[str] = []
		stream = self.client.stream_chat(messages, tools=tools, model=self.model)
		try:
			async for delta in stream:
				if delta.text:
					delivered.append(delta.text)
					yield sse.text_delta(delta.text)
				for fragment in delta.tool_calls:
					accumulator.add(fragment)
		except (asyncio.CancelledError, GeneratorExit):
			# The respondent interrupted; what was delivered stays with the client
			logger.info("turn stream closed by client after %d text chunks", len(delivered))
			raise
		except StreamingFault as e:
			logger.error("chat model stream failed: %s", e.details)
			yield sse.error(e.message)
			return
		except Exception:
			logger.exception("chat model stream failed")
			yield sse.error(STREAM_FAILURE_MESSAGE)
			return
		finally:
			await stream.aclose()

		signal = accumulator.termination()
		if signal is not None:
			closing = signal.closing_message.strip()
			if closing:
				visible = "".join(delivered)
				if visible and not visible[-1].isspace():
					closing = "\n\n" + closing
				delivered.append(closing)
				yield sse.text_delta(closing)
			logger.info("model ended the conversation (%s)", signal.reason)
			yield sse.end_conversation(signal.reason)

		if on_complete is not None:
			try:
				on_complete("".join(delivered))
			except Exception:
				logger.warning("turn completion hook failed", exc_info=True)
		yield sse.done()

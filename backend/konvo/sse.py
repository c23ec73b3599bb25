"""
Server-sent event framing for the turn-exchange stream.

Every event is one `data: <json>\n\n` frame carrying a discriminated union:

- {"type": "text-delta", "content": str}
- {"type": "end_conversation", "reason": "refusal" | "thorough"}
- {"type": "done"}
- {"type": "error", "error": str}

The parser and reply reader here are the consuming side of the same
protocol; they are what a Python client (and the test-suite) uses.
"""

from __future__ import annotations
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)


def text_delta(content: str) -> Dict[str, Any]:
	return {"type": "text-delta", "content": content}


def end_conversation(reason: str) -> Dict[str, Any]:
	return {"type": "end_conversation", "reason": reason}


def done() -> Dict[str, Any]:
	return {"type": "done"}


def error(message: str) -> Dict[str, Any]:
	return {"type": "error", "error": message}


def encode_event(event: Dict[str, Any]) -> str:
	# non-ASCII text goes out as literal UTF-8
	return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class SSEParser:
	"""Incremental decoder: feed raw chunks, get complete events back.

	Frames split across chunks are buffered until their blank-line terminator
	arrives. Bytes go through an incremental UTF-8 decoder, so a character
	split between chunks is kept whole. Frames that do not decode are skipped
	with a warning.
	"""

	def __init__(self) -> None:
		self._buffer = ""
		self._decoder = codecs.getincrementaldecoder("utf-8")()

	def feed(self, chunk: Union[str, bytes]) -> List[Dict[str, Any]]:
		if isinstance(chunk, bytes):
			chunk = self._decoder.decode(chunk)
		self._buffer += chunk
		*frames, self._buffer = self._buffer.split("\n\n")
		events: List[Dict[str, Any]] = []
		for frame in frames:
			events.extend(self._decode_frame(frame))
		return events

	def flush(self) -> List[Dict[str, Any]]:
		rest, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
		return self._decode_frame(rest)

	@staticmethod
	def _decode_frame(frame: str) -> List[Dict[str, Any]]:
		events: List[Dict[str, Any]] = []
		for line in frame.strip().split("\n"):
			if not line.startswith("data: "):
				continue
			payload = line[6:]
			try:
				event = json.loads(payload)
			except ValueError:
				logger.warning("failed to parse SSE event: %s", payload[:200])
				continue
			if isinstance(event, dict):
				events.append(event)
		return events


def iter_events(chunks: Iterable[Union[str, bytes]]) -> Iterator[Dict[str, Any]]:
	parser = SSEParser()
	for chunk in chunks:
		yield from parser.feed(chunk)
	yield from parser.flush()


@dataclass
class AssistantReply:
	text: str = ""
	end_reason: Optional[str] = None
	error: Optional[str] = None
	finished: bool = False


def read_reply(events: Iterable[Dict[str, Any]]) -> AssistantReply:
	"""Rebuild one assistant turn from its events.

	A stream that stops early (the respondent interrupted) is not an error:
	the reply holds exactly the text delivered so far with `finished` False.
	"""
	reply = AssistantReply()
	parts: List[str] = []
	for event in events:
		kind = event.get("type")
		if kind == "text-delta":
			parts.append(str(event.get("content") or ""))
		elif kind == "end_conversation":
			reply.end_reason = event.get("reason")
		elif kind == "error":
			reply.error = str(event.get("error") or "")
			break
		elif kind == "done":
			reply.finished = True
			break
	reply.text = "".join(parts)
	return reply

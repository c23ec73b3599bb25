from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from .errors import StreamingFault
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ToolCallFragment:
	index: int
	id: Optional[str] = None
	name: Optional[str] = None
	arguments: str = ""


@dataclass
class StreamDelta:
	text: str = ""
	tool_calls: List[ToolCallFragment] = field(default_factory=list)


class LLMClient:
	"""Thin client for an OpenAI-compatible chat completions endpoint.

	Gemini is reached through its OpenAI-compatible surface so that tool calls
	stream as incremental argument fragments, the same way OpenRouter does.
	"""

	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.chat_model
		self.base_url = (base_url or settings.llm_base_url).rstrip("/") + "/chat/completions"
		self._headers = {
			"Authorization": f"Bearer {self.api_key}",
			"Content-Type": "application/json",
		}
		self._client = httpx.AsyncClient(timeout=settings.llm_timeout_seconds)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=settings.llm_timeout_seconds)

	async def complete_json(
		self,
		messages: List[Dict[str, Any]],
		*,
		schema_name: str,
		schema: Dict[str, Any],
		model: Optional[str] = None,
	) -> str:
		"""Run one structured-output completion and return the raw JSON text."""
		payload: Dict[str, Any] = {
			"model": model or self.model,
			"messages": messages,
			"response_format": {
				"type": "json_schema",
				"json_schema": {"name": schema_name, "strict": True, "schema": schema},
			},
		}
		last_error: Optional[Exception] = None
		try:
			r = await self._client.post(self.base_url, headers=self._headers, json=payload)
			r.raise_for_status()
		except (httpx.HTTPStatusError, httpx.RequestError) as err:
			last_error = err
		if last_error is None:
			try:
				data = r.json()
				return data["choices"][0]["message"]["content"]
			except Exception:
				last_error = RuntimeError(f"Unexpected completion response: {r.text}")
		if not self._fallback_enabled:
			raise last_error
		logger.warning("primary judge call failed (%s); trying OpenRouter", last_error)
		return await self._fallback_complete(payload, last_error)

	async def stream_chat(
		self,
		messages: List[Dict[str, Any]],
		*,
		tools: Optional[List[Dict[str, Any]]] = None,
		model: Optional[str] = None,
	) -> AsyncIterator[StreamDelta]:
		"""Yield text and tool-call fragments as the model produces them."""
		payload: Dict[str, Any] = {
			"model": model or self.model,
			"messages": messages,
			"stream": True,
		}
		if tools:
			payload["tools"] = tools
		async with self._client.stream("POST", self.base_url, headers=self._headers, json=payload) as r:
			if r.status_code >= 400:
				await r.aread()
				raise StreamingFault(f"chat stream returned {r.status_code}: {r.text[:500]}")
			async for line in r.aiter_lines():
				delta = parse_stream_line(line)
				if delta is None:
					continue
				if delta is _DONE:
					break
				yield delta

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_complete(self, payload: Dict[str, Any], primary_error: Optional[Exception]) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error or RuntimeError("Fallback requested but OpenRouter is not configured")
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		fallback_payload = {**payload, "model": self._openrouter_model}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=fallback_payload,
			)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as fallback_err:
			if primary_error is not None:
				raise RuntimeError(
					f"Primary judge call failed ({primary_error}); fallback via OpenRouter also failed"
				) from fallback_err
			raise fallback_err


_DONE = StreamDelta()


def parse_stream_line(line: str) -> Optional[StreamDelta]:
	"""Decode one `data:` line of a streamed chat completion.

	Returns None for keep-alives and lines without a choice, and the `_DONE`
	sentinel for the terminating `[DONE]` marker.
	"""
	line = (line or "").strip()
	if not line.startswith("data:"):
		return None
	data = line[5:].strip()
	if data == "[DONE]":
		return _DONE
	try:
		chunk = json.loads(data)
	except ValueError:
		logger.warning("skipping undecodable stream chunk: %s", data[:200])
		return None
	choices = chunk.get("choices") or []
	if not choices:
		return None
	delta = choices[0].get("delta") or {}
	fragments: List[ToolCallFragment] = []
	for position, call in enumerate(delta.get("tool_calls") or []):
		fn = call.get("function") or {}
		fragments.append(
			ToolCallFragment(
				index=call.get("index", position),
				id=call.get("id"),
				name=fn.get("name"),
				arguments=fn.get("arguments") or "",
			)
		)
	return StreamDelta(text=delta.get("content") or "", tool_calls=fragments)


def get_llm_client() -> LLMClient:
	return LLMClient()

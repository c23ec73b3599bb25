"""
Chat Assessment Router

Turn exchange for the chat and voice assessment modes. The client posts the
transcript so far and reads the assistant's reply back as server-sent events
(see `konvo.sse` for the event union). Each request is one assistant turn;
nothing about the conversation is kept server-side apart from the audit log.
"""

from __future__ import annotations
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..facade import AssessmentFacade, get_facade
from ..schemas import ConversationMessage, RubricItem

router = APIRouter(prefix="/api", tags=["chat-assessment"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


# ============================================================================
# REQUEST MODELS
# ============================================================================

class ChatMessageIn(BaseModel):
    """One transcript entry as the client sends it."""
    role: Literal["student", "assistant"]
    content: str = ""

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(
            role="respondent" if self.role == "student" else "assistant",
            content=self.content,
        )


class ChatAssessmentRequest(BaseModel):
    """
    Request body for one turn.

    `system_prompt` and `greeting` carry teacher-customised prompts that the
    client already interpolated; when absent the defaults are used.
    """
    model_config = ConfigDict(populate_by_name=True)

    assignment_id: str = Field(alias="assignmentId")
    submission_id: Optional[str] = Field(default=None, alias="submissionId")
    question_order: int = Field(alias="questionOrder")
    question_prompt: str = Field(alias="questionPrompt")
    rubric: List[RubricItem]
    language: str
    messages: List[ChatMessageIn]
    attempt_number: Optional[int] = Field(default=None, alias="attemptNumber")
    system_prompt: Optional[str] = None
    greeting: Optional[str] = None
    shared_context: Optional[str] = None
    expected_answer: Optional[str] = None
    mode: Literal["chat", "voice"] = "chat"
    max_attempts: Optional[int] = Field(default=None, alias="maxAttempts")
    total_questions: Optional[int] = Field(default=None, alias="totalQuestions")


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.post("/chat-assessment")
async def chat_assessment(req: ChatAssessmentRequest, facade: AssessmentFacade = Depends(get_facade)):
    """
    Stream one assistant turn.

    Validation failures are plain 400 responses. Once streaming starts the
    status is committed, so model failures arrive as an in-band `error` event.
    """
    body = facade.exchange_turn(
        assignment_id=req.assignment_id,
        submission_id=req.submission_id,
        question_order=req.question_order,
        question_prompt=req.question_prompt,
        rubric=req.rubric,
        language=req.language,
        messages=[m.to_message() for m in req.messages],
        attempt_number=req.attempt_number,
        system_prompt=req.system_prompt,
        greeting=req.greeting,
        shared_context=req.shared_context,
        expected_answer=req.expected_answer,
        mode=req.mode,
        max_attempts=req.max_attempts,
        total_questions=req.total_questions,
    )
    return StreamingResponse(body, media_type="text/event-stream", headers=SSE_HEADERS)

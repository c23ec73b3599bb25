import json
from datetime import timedelta

import pytest

from conftest import create_access_token, text, tool
from konvo.models import ChatMessage
from konvo.sse import iter_events, read_reply

RUBRIC = [{"item": "Clarity", "points": 5}, {"item": "Accuracy", "points": 5}]


def _judge(*earned):
    return json.dumps({
        "rubric_scores": [
            {"item": r["item"], "points_earned": e, "points_possible": r["points"], "feedback": "ok"}
            for r, e in zip(RUBRIC, earned)
        ],
        "overall_feedback": "Good effort",
    })


@pytest.fixture
def submission_id(client):
    res = client.post(
        "/api/submissions",
        json={"assignmentId": "assignment-1", "preferredLanguage": "en", "responderDetails": {"name": "Asha"}},
    )
    assert res.status_code == 201
    return res.json()["submission_id"]


def _evaluate_body(submission_id, **overrides):
    body = {
        "submissionId": submission_id,
        "questionOrder": 0,
        "answerText": "Plants use sunlight to make food.",
        "questionPrompt": "Explain photosynthesis",
        "rubric": RUBRIC,
        "language": "en",
    }
    body.update(overrides)
    return body


def _chat_body(messages, **overrides):
    body = {
        "assignmentId": "assignment-1",
        "questionOrder": 0,
        "questionPrompt": "What do plants need to grow?",
        "rubric": RUBRIC,
        "language": "en",
        "messages": messages,
    }
    body.update(overrides)
    return body


# ---- evaluate ----------------------------------------------------------------

def test_evaluate_clamps_and_records_attempt(client, fake_llm, submission_id):
    fake_llm.judge_output = _judge(7, 3)

    res = client.post("/api/evaluate", json=_evaluate_body(submission_id))

    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    attempt = data["attempt"]
    assert attempt["attempt_number"] == 1
    assert attempt["score"] == 8
    assert attempt["max_score"] == 10
    assert [s["points_earned"] for s in attempt["rubric_scores"]] == [5, 3]
    assert attempt["evaluation_feedback"] == "Good effort"
    assert data["submission"]["answers"]["0"]["selected_attempt"] == 1
    assert fake_llm.closed == 1


def test_second_evaluation_gets_next_attempt_number(client, fake_llm, submission_id):
    fake_llm.judge_output = _judge(1, 1)
    client.post("/api/evaluate", json=_evaluate_body(submission_id))

    res = client.post("/api/evaluate", json=_evaluate_body(submission_id, answerText="Better answer"))

    assert res.json()["attempt"]["attempt_number"] == 2


@pytest.mark.parametrize(
    "overrides",
    [{"answerText": ""}, {"answerText": "   "}, {"rubric": []}, {"language": ""}, {"questionPrompt": ""}],
)
def test_evaluate_rejects_empty_fields(client, fake_llm, submission_id, overrides):
    res = client.post("/api/evaluate", json=_evaluate_body(submission_id, **overrides))

    assert res.status_code == 400
    assert res.json() == {"error": "Missing required fields"}
    assert fake_llm.judge_calls == []


def test_evaluate_rejects_missing_fields(client, submission_id):
    body = _evaluate_body(submission_id)
    del body["questionOrder"]

    res = client.post("/api/evaluate", json=body)

    assert res.status_code == 400
    assert res.json() == {"error": "Missing required fields"}


def test_evaluate_judge_failure_is_a_500_with_details(client, fake_llm, submission_id):
    fake_llm.judge_error = RuntimeError("upstream quota exceeded")

    res = client.post("/api/evaluate", json=_evaluate_body(submission_id))

    assert res.status_code == 500
    assert res.json()["error"] == "Failed to evaluate answer"
    assert "quota" in res.json()["details"]
    assert client.get(f"/api/submissions/{submission_id}").json()["answers"] == {}


@pytest.mark.parametrize("output", ["{}", "[]"])
def test_evaluate_judge_output_without_scores_keeps_attempt_budget(client, fake_llm, submission_id, output):
    fake_llm.judge_output = output

    res = client.post("/api/evaluate", json=_evaluate_body(submission_id))

    assert res.status_code == 500
    assert res.json()["error"] == "Failed to evaluate answer"
    assert client.get(f"/api/submissions/{submission_id}").json()["answers"] == {}


def test_evaluate_unknown_submission_fails_before_scoring(client, fake_llm):
    res = client.post("/api/evaluate", json=_evaluate_body("nope1234"))

    assert res.status_code == 500
    assert res.json()["error"] == "Failed to fetch submission"
    assert fake_llm.judge_calls == []


# ---- chat assessment ---------------------------------------------------------

def test_chat_turn_streams_sse(client, fake_llm, session_factory):
    fake_llm.stream_script = [text("Can you say "), text("more?")]
    messages = [
        {"role": "assistant", "content": "Hi, I'm Konvo. What do plants need?"},
        {"role": "student", "content": "Water"},
    ]

    res = client.post("/api/chat-assessment", json=_chat_body(messages, submissionId="sub00001", attemptNumber=1))

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.headers["cache-control"] == "no-cache"
    reply = read_reply(iter_events([res.text]))
    assert reply.text == "Can you say more?"
    assert reply.finished is True

    db = session_factory()
    try:
        rows = db.query(ChatMessage).order_by(ChatMessage.id).all()
        assert [(r.role, r.content) for r in rows] == [("student", "Water"), ("assistant", "Can you say more?")]
        assert all(r.submission_id == "sub00001" and r.attempt_number == 1 for r in rows)
    finally:
        db.close()


def test_chat_opening_turn_uses_greeting(client, fake_llm):
    fake_llm.stream_script = [text("Hello!")]

    res = client.post("/api/chat-assessment", json=_chat_body([], greeting="Greet the student in {{language}}."))

    assert res.status_code == 200
    call = fake_llm.stream_calls[0]
    assert call["tools"] is None
    assert call["messages"][-1] == {"role": "user", "content": "Greet the student in English."}


def test_chat_voice_mode_adds_tts_instruction(client, fake_llm):
    fake_llm.stream_script = [text("Hi")]

    client.post("/api/chat-assessment", json=_chat_body([], mode="voice", language="kn"))

    system = fake_llm.stream_calls[0]["messages"][0]["content"]
    assert "TTS" in system
    assert "Respond only in Kannada" in system


def test_chat_end_conversation_event(client, fake_llm):
    fake_llm.stream_script = [tool('{"reason": "refusal", "closing_message": "No problem, thanks!"}', name="end_conversation")]
    messages = [{"role": "assistant", "content": "What do plants need?"}, {"role": "student", "content": "I won't answer"}]

    res = client.post("/api/chat-assessment", json=_chat_body(messages))

    events = list(iter_events([res.text]))
    assert [e["type"] for e in events] == ["text-delta", "end_conversation", "done"]
    assert events[1]["reason"] == "refusal"


def test_chat_model_failure_is_an_in_band_error(client, fake_llm):
    fake_llm.stream_script = [RuntimeError("boom")]
    messages = [{"role": "student", "content": "Sunlight"}]

    res = client.post("/api/chat-assessment", json=_chat_body(messages))

    assert res.status_code == 200
    events = list(iter_events([res.text]))
    assert events == [{"type": "error", "error": "Failed to generate chat reply"}]


def test_chat_rejects_missing_fields(client, fake_llm):
    body = _chat_body([])
    del body["messages"]

    res = client.post("/api/chat-assessment", json=body)

    assert res.status_code == 400
    assert res.json() == {"error": "Missing required fields"}
    assert fake_llm.stream_calls == []


# ---- submissions -------------------------------------------------------------

def test_public_submission_requires_details(client):
    res = client.post("/api/submissions", json={"assignmentId": "assignment-1"})

    assert res.status_code == 400


def test_resolve_session_for_authenticated_student(client, student_headers):
    first = client.post("/api/submissions/resolve", json={"assignmentId": "assignment-1"}, headers=student_headers)
    again = client.post("/api/submissions/resolve", json={"assignmentId": "assignment-1"}, headers=student_headers)

    assert first.json()["created"] is True
    assert again.json()["source"] == "respondent"
    assert again.json()["submission"]["submission_id"] == first.json()["submission"]["submission_id"]
    assert again.json()["submission"]["student_id"] == "student-1"


def test_resolve_session_with_bad_token_is_401(client):
    res = client.post(
        "/api/submissions/resolve",
        json={"assignmentId": "assignment-1"},
        headers={"Authorization": "Bearer not-a-token"},
    )

    assert res.status_code == 401


def test_resolve_session_with_expired_token_is_401(client):
    token = create_access_token({"sub": "student-1"}, expires_in=timedelta(minutes=-5))

    res = client.post(
        "/api/submissions/resolve",
        json={"assignmentId": "assignment-1"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert res.status_code == 401


def test_me_reports_role(client, teacher_headers):
    assert client.get("/auth/me", headers=teacher_headers).json() == {"user_id": "teacher-1", "role": "teacher"}


def test_unknown_submission_is_404(client):
    res = client.get("/api/submissions/missing1")

    assert res.status_code == 404
    assert res.json() == {"error": "Submission not found: missing1"}


def test_grader_actions_require_teacher(client, fake_llm, submission_id, student_headers, teacher_headers):
    fake_llm.judge_output = _judge(2, 2)
    client.post("/api/evaluate", json=_evaluate_body(submission_id))
    fake_llm.judge_output = _judge(5, 5)
    client.post("/api/evaluate", json=_evaluate_body(submission_id))

    assert client.post(f"/api/submissions/{submission_id}/reset").status_code == 401
    assert client.post(f"/api/submissions/{submission_id}/reset", headers=student_headers).status_code == 403

    selected = client.post(
        f"/api/submissions/{submission_id}/questions/0/select",
        json={"attemptNumber": 2},
        headers=teacher_headers,
    )
    assert selected.status_code == 200
    assert selected.json()["answers"]["0"]["selected_attempt"] == 2

    attempts = client.get(f"/api/submissions/{submission_id}/questions/0/attempts").json()
    assert attempts["best_attempt"] == 2

    reset = client.post(f"/api/submissions/{submission_id}/reset", headers=teacher_headers)
    assert reset.status_code == 200
    assert all(a["stale"] for a in reset.json()["answers"]["0"]["attempts"])

    live = client.get(f"/api/submissions/{submission_id}/questions/0/attempts?exclude_stale=true").json()
    assert live == {"attempts": [], "best_attempt": None}

    listed = client.get("/api/assignments/assignment-1/submissions", headers=teacher_headers)
    assert [s["submission_id"] for s in listed.json()["submissions"]] == [submission_id]


def test_select_unknown_attempt_is_400(client, submission_id, teacher_headers):
    res = client.post(
        f"/api/submissions/{submission_id}/questions/0/select",
        json={"attemptNumber": 3},
        headers=teacher_headers,
    )

    assert res.status_code == 400


def test_complete_submission(client, submission_id):
    res = client.post(f"/api/submissions/{submission_id}/complete")

    assert res.status_code == 200
    assert res.json()["status"] == "completed"
    assert res.json()["submitted_at"] is not None

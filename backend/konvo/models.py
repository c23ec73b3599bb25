from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, UniqueConstraint
from .db import Base


class Submission(Base):
	__tablename__ = "submissions"
	__table_args__ = (
		# NULL student ids (public respondents) never collide
		UniqueConstraint("assignment_id", "student_id", name="uq_submissions_assignment_student"),
	)
	submission_id = Column(String(32), primary_key=True, index=True)
	assignment_id = Column(String(64), nullable=False, index=True)
	student_id = Column(String(64), nullable=True, index=True)
	responder_details = Column(Text, nullable=True)  # JSON object
	preferred_language = Column(String(16), default="en", nullable=False)
	status = Column(String(16), default="in_progress", nullable=False)
	answers = Column(Text, nullable=False, default="{}")  # JSON document keyed by question order
	# Bumped on every write; guards the read-modify-write of `answers`
	version = Column(Integer, default=0, nullable=False)
	submitted_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ChatMessage(Base):
	__tablename__ = "chat_messages"
	id = Column(Integer, primary_key=True, autoincrement=True)
	submission_id = Column(String(32), nullable=True, index=True)
	assignment_id = Column(String(64), nullable=False, index=True)
	question_order = Column(Integer, nullable=False)
	role = Column(String(16), nullable=False)
	content = Column(Text, nullable=False)
	attempt_number = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./app.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(bind=None) -> None:
	bind = bind or engine
	try:
		inspector = inspect(bind)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "submissions" in tables:
		cols = {c["name"] for c in inspector.get_columns("submissions")}
		with bind.begin() as conn:
			if "version" not in cols:
				conn.exec_driver_sql("ALTER TABLE submissions ADD COLUMN version INTEGER DEFAULT 0 NOT NULL")
			if "responder_details" not in cols:
				conn.exec_driver_sql("ALTER TABLE submissions ADD COLUMN responder_details TEXT")
			if "student_id" not in cols:
				conn.exec_driver_sql("ALTER TABLE submissions ADD COLUMN student_id VARCHAR(64)")
	if "chat_messages" in tables:
		cols = {c["name"] for c in inspector.get_columns("chat_messages")}
		if "attempt_number" not in cols:
			with bind.begin() as conn:
				conn.exec_driver_sql("ALTER TABLE chat_messages ADD COLUMN attempt_number INTEGER")

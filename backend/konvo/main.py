import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .db import Base, engine, ensure_schema
from .errors import AssessmentError
from .settings import settings
from .routers import auth
from .routers import chat_assessment
from .routers import evaluate
from .routers import submissions

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Konvo Assessment API")
app.include_router(auth.router)
app.include_router(chat_assessment.router)
app.include_router(evaluate.router)
app.include_router(submissions.router)


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
	if exc.status_code >= 500:
		logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.details)
	return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
	logger.info("%s %s rejected: %s", request.method, request.url.path, exc.errors())
	return JSONResponse(status_code=400, content={"error": "Missing required fields"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
	logger.exception("%s %s crashed", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})


@app.get("/info")
def root():
	return {"status": "ok", "llm_configured": bool(settings.gemini_api_key)}


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	try:
		ensure_schema()
	except Exception:
		logger.warning("schema migration skipped", exc_info=True)

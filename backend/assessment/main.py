from fastapi import FastAPI

from .logging_config import setup_logging
from .settings import settings
from .routers import session

app = FastAPI(title="Language Assessment API")
app.include_router(session.router)


@app.get("/info")
def root():
	return {
		"status": "ok",
		"gemini_configured": bool(settings.gemini_api_key),
		"exam": f"{settings.exam_language} {settings.exam_level}",
	}


@app.on_event("startup")
async def startup_event():
	setup_logging()


@app.on_event("shutdown")
async def shutdown_event():
	# Cancel in-flight prefetches and close the playback device
	await session.shutdown_session()

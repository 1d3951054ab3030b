import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from quizmate.config import LOG_LEVEL, RECONCILE_INTERVAL_SECONDS
from quizmate.controller.reconciler import ControllerRegistry
from quizmate.database import create_db_and_tables, get_engine
from quizmate.errors import APIError
from quizmate.realtime import ChangeFeed
from quizmate.services.question_service import QuestionServiceClient

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger("quizmate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: create tables on whichever engine requests will use
    bind = app.dependency_overrides.get(get_engine, get_engine)()
    create_db_and_tables(bind)

    app.state.feed = ChangeFeed()
    app.state.question_service = QuestionServiceClient()
    app.state.controllers = ControllerRegistry(
        app.state.feed,
        app.state.question_service,
        poll_interval=RECONCILE_INTERVAL_SECONDS
    )
    logger.info("QuizMate started")
    yield
    # Shutdown: stop every controller before the feed goes away
    app.state.controllers.close()
    app.state.feed.close()
    app.state.question_service.close()


# Initialize FastAPI app
app = FastAPI(
    title="QuizMate",
    description="AI generated quizzes, solo or head to head",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    return exc.to_response()


# Include routers
from quizmate.routers import auth, competitions, live, queue, quiz, session

app.include_router(auth.router, tags=["auth"])
app.include_router(competitions.router, tags=["competitions"])
app.include_router(live.router, tags=["live"])
app.include_router(queue.router, tags=["queue"])
app.include_router(quiz.router, tags=["quiz"])
app.include_router(session.router, tags=["session"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)

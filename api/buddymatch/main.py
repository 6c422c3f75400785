import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import LOG_LEVEL, MATCH_QUEUE_BACKEND
from .database import Base, SessionLocal, engine
from .routes import include_modular_routers
from .services.durable_queue import DurableMatchQueue
from .services.matching import Clock, MatchingEngine, utc_now
from .services.session_store import InMemorySessionStore, SqlSessionStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


def init_db() -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)


def build_components(backend: str = MATCH_QUEUE_BACKEND, clock: Clock = utc_now):
    if backend == "database":
        return DurableMatchQueue(session_factory=SessionLocal, clock=clock), SqlSessionStore(SessionLocal)
    if backend == "memory":
        return MatchingEngine(clock=clock), InMemorySessionStore()
    raise ValueError(f"Unknown MATCH_QUEUE_BACKEND: {backend!r}")


def create_app(matching_engine=None, session_store=None, clock: Clock = utc_now) -> FastAPI:
    """Build the API around an explicitly owned matching engine.

    Passing ``matching_engine`` and ``session_store`` skips backend selection
    and any database startup work, which is how tests get a fresh instance.
    """
    app = FastAPI(title="Buddy Match API")
    include_modular_routers(app)

    uses_database = matching_engine is None and MATCH_QUEUE_BACKEND == "database"
    if matching_engine is None or session_store is None:
        default_engine, default_store = build_components(clock=clock)
        if matching_engine is None:
            matching_engine = default_engine
        if session_store is None:
            session_store = default_store

    app.state.matching_engine = matching_engine
    app.state.session_store = session_store
    app.state.clock = clock

    @app.on_event("startup")
    def on_startup() -> None:
        if uses_database:
            wait_for_db()
            init_db()
        logger.info("[startup] matching engine=%s", type(app.state.matching_engine).__name__)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


configure_logging()
app = create_app()

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session
from scene_import.database import engine, SessionLocal, Base
from scene_import.models import import_job, scene  # noqa: F401 — register tables
from scene_import.config import settings
from scene_import.agents.import_agent import build_pipeline_deps
from scene_import.routes.import_routes import router as import_router
from scene_import.routes.cron_routes import router as cron_router
from scene_import.services.sweeper import sweep_stale_jobs
import uvicorn

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def _scheduled_sweep(deps):
    """Job executed by APScheduler — same sweep the cron route exposes."""
    db: Session = SessionLocal()
    try:
        sweep_stale_jobs(db, deps, stale_minutes=settings.sweep_stale_minutes, limit=settings.sweep_batch_limit)
    except Exception as e:
        logger.error("[Scheduler] Stale import sweep failed: %s", e)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")
    app.state.pipeline_deps = build_pipeline_deps(settings)
    if settings.sweep_interval_minutes > 0:
        scheduler.add_job(
            _scheduled_sweep,
            trigger="interval",
            minutes=settings.sweep_interval_minutes,
            id="sweep_stale_imports",
            name="Stale import sweep",
            args=[app.state.pipeline_deps],
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info("APScheduler started — sweeping every %d min", settings.sweep_interval_minutes)
    yield
    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")


app = FastAPI(
    title="Scene Import",
    description="Scanned script → structured scene pipeline — FastAPI + LangGraph + SQLAlchemy",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(import_router)
app.include_router(cron_router)


@app.get("/health")
def health():
    return {"status": "ok", "scheduler_jobs": len(scheduler.get_jobs())}


def start():
    """Entry point for the `scene-import` script."""
    uvicorn.run("scene_import.main:app", host=settings.app_host, port=settings.app_port, reload=settings.debug)

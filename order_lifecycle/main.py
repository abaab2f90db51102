from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_lifecycle.core.broker import create_fulfillment_queue
from order_lifecycle.core.config import Settings
from order_lifecycle.core.database import create_engine, create_session_maker
from order_lifecycle.core.logging import setup_logging
from order_lifecycle.core.queue import FulfillmentQueue
from order_lifecycle.models import Base
from order_lifecycle.api.orders import router as orders_router
from order_lifecycle.api.runs import router as runs_router
from order_lifecycle.api.health import router as health_router
from order_lifecycle.services.fulfillment import Fulfiller, SimulatedFulfiller
from order_lifecycle.services.intake import IntakeCoordinator, RunRegistry
from order_lifecycle.services.orchestrator import LifecycleOrchestrator
from order_lifecycle.services.worker import FulfillmentWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(app.state.settings)

    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await app.state.queue.connect()
    if app.state.settings.run_worker:
        await app.state.queue.consume(app.state.worker.process_message)

    yield

    await app.state.run_registry.wait_all()
    await app.state.queue.close()
    await app.state.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[FulfillmentQueue] = None,
    fulfiller: Optional[Fulfiller] = None
) -> FastAPI:
    settings = settings or Settings()
    engine = create_engine(settings)
    session_maker = create_session_maker(engine)
    queue = queue or create_fulfillment_queue(settings)
    fulfiller = fulfiller or SimulatedFulfiller(settings.fulfillment_success_rate)

    orchestrator = LifecycleOrchestrator(session_maker, queue, settings)
    run_registry = RunRegistry(max_runs=settings.run_retention_count)

    app = FastAPI(
        title="Order Lifecycle Service",
        description="Order intake, storage and fulfillment lifecycle",
        version="0.1.0",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_maker = session_maker
    app.state.queue = queue
    app.state.run_registry = run_registry
    app.state.intake = IntakeCoordinator(orchestrator, run_registry)
    app.state.worker = FulfillmentWorker(session_maker, fulfiller, settings)

    cors_origins = settings.cors_origins.split(",") if settings.cors_origins else ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(runs_router)

    return app


app = create_app()

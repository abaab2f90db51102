import pytest
import pytest_asyncio
from decimal import Decimal
from httpx import AsyncClient, ASGITransport

from order_lifecycle.core.config import Settings
from order_lifecycle.core.database import create_engine, create_session_maker
from order_lifecycle.core.queue import InMemoryFulfillmentQueue
from order_lifecycle.main import create_app
from order_lifecycle.models import Base
from order_lifecycle.schemas.order import OrderDraft
from order_lifecycle.services.fulfillment import SimulatedFulfiller
from order_lifecycle.services.orchestrator import LifecycleOrchestrator
from order_lifecycle.services.worker import FulfillmentWorker


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        queue_backend="memory",
        dlq_max_receive_count=3,
        fulfillment_success_rate=0.7,
        run_worker=False
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def queue(settings) -> InMemoryFulfillmentQueue:
    return InMemoryFulfillmentQueue(max_receive_count=settings.dlq_max_receive_count)


@pytest.fixture
def orchestrator(session_maker, queue, settings) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(session_maker, queue, settings)


@pytest.fixture
def worker(session_maker, settings) -> FulfillmentWorker:
    return FulfillmentWorker(session_maker, SimulatedFulfiller(settings.fulfillment_success_rate), settings)


@pytest.fixture
def make_draft():
    def _make_draft(**overrides) -> OrderDraft:
        fields = {
            "order_id": "order-1",
            "customer_id": "CUST-1234",
            "product_id": "PROD-5678",
            "quantity": 2,
            "price": Decimal("19.99"),
        }
        fields.update(overrides)
        return OrderDraft(**fields)

    return _make_draft


@pytest_asyncio.fixture
async def app(settings, engine, queue):
    app = create_app(settings, queue=queue)

    yield app

    await app.state.run_registry.wait_all()
    await app.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

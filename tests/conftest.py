import pytest
from fastapi.testclient import TestClient
from data.database import Base, engine, SessionLocal
from main import app
from config import AnalyticsConfig
from models.experiments import Experiment, Variant
from services.cache import get_memory_storage_client
from services.session import EventSurface, ExperimentSession
from services.transport import InMemoryAnalyticsSink

AUTH_HEADERS = {"Authorization": "Bearer fake-client-token"}


class FakeClock:
    """Monotonic clock the tests move by hand."""
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield

@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c

@pytest.fixture
def auth_headers():
    return dict(AUTH_HEADERS)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def storage():
    return get_memory_storage_client()

@pytest.fixture
def sink():
    return InMemoryAnalyticsSink()

@pytest.fixture
def surface():
    return EventSurface()

@pytest.fixture
def analytics_config():
    return AnalyticsConfig(batch_size=50, flush_interval=0, tracking_id=None, enable_heat_mapping=True)

@pytest.fixture
def session(analytics_config, storage, sink, surface, clock):
    s = ExperimentSession(
        config=analytics_config,
        user_id="user-42",
        audience="institutional",
        storage=storage,
        sink=sink,
        surface=surface,
        viewport_width=1280,
        clock=clock,
    )
    s.start()
    yield s
    s.end()

@pytest.fixture
def pricing_experiment():
    return Experiment(
        test_id="pricing_test",
        name="Pricing page layout",
        variants=[
            Variant(id="control", name="Control", weight=50),
            Variant(id="v2", name="Compact pricing", weight=50, config={"layout": "compact"}),
        ],
    )

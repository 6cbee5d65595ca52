import os
import sys
import uuid
from datetime import date

# Add parent dir to path to import leadtrack
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.pool import StaticPool

from leadtrack.config import AppContext, Settings
from leadtrack.database.session import build_engine, build_session_factory, create_schema
from leadtrack.schemas import Lead, LeadStatus, Profile, Role, TodoStatus
from leadtrack.services.gateway import PersistenceGateway

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TODAY = date(2026, 10, 18)

TEST_SETTINGS = Settings(
    database_url=TEST_DATABASE_URL,
    auto_create_schema=True,
    reconcile_fast_delay=0.0,
    reconcile_slow_delay=0.0,
    gateway_timeout=5.0,
)


def make_engine():
    # One shared connection so every session sees the same in-memory database
    return build_engine(TEST_DATABASE_URL, poolclass=StaticPool, connect_args={"check_same_thread": False})


async def make_context(with_schema: bool = True) -> AppContext:
    engine = make_engine()
    if with_schema:
        await create_schema(engine)
    return AppContext(settings=TEST_SETTINGS, engine=engine, session_factory=build_session_factory(engine))


async def make_gateway(with_schema: bool = True):
    context = await make_context(with_schema)
    return context, PersistenceGateway.from_context(context)


async def add_profile(gateway, user_id: str, role: Role = Role.AGENT, name: str = None) -> Profile:
    profile = await gateway.ensure_profile(user_id, f"{user_id}@example.com", name or user_id.title())
    if profile.role != role:
        await gateway.update_profile_role(user_id, role)
        profile = await gateway.fetch_profile(user_id)
    return profile


async def settle(workspace):
    """Waits for background writes and any reconciliation they scheduled."""
    await workspace.drain()
    pending = workspace.reconciler.pending
    if pending is not None:
        await pending
    await workspace.drain()


def make_profile(user_id: str = "agent-1", role: Role = Role.AGENT, name: str = "Agent One") -> Profile:
    return Profile(id=user_id, email=f"{user_id}@example.com", name=name, role=role)


def make_lead(**overrides) -> Lead:
    values = dict(
        id=str(uuid.uuid4()),
        name="Acme Corp",
        status=LeadStatus.HOT,
        todo=TodoStatus.NEW,
        follow_up_date=TODAY,
        assigned_agent_id="agent-1",
        assigned_agent_name="Agent One",
    )
    values.update(overrides)
    return Lead(**values)

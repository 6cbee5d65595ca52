"""
Persistence Gateway

Typed async wrapper around the relational store. Maps ORM rows to the domain
models in ``leadtrack.schemas`` and translates driver errors into the
``GatewayError`` taxonomy. Holds no lead logic of its own.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import select, delete, desc, inspect
from sqlalchemy.exc import (
    DBAPIError,
    DataError,
    IntegrityError,
    InterfaceError,
    NoResultFound,
    OperationalError,
    StatementError,
)
from sqlalchemy.orm import selectinload

from leadtrack import schemas
from leadtrack.config import Capabilities, OPTIONAL_TABLES, REQUIRED_TABLES
from leadtrack.database.models.crm import ActivityLog, Lead, Note
from leadtrack.database.models.general import AgentTarget, PayoutRequest, PersonalTask, PointsHistory, Profile
from leadtrack.exceptions import (
    GatewayError,
    InsufficientPoints,
    NotFound,
    SchemaMissing,
    TransientNetwork,
    ValidationRejected,
)

logger = logging.getLogger(__name__)

LEAD_FIELDS = {
    "name", "link", "status", "todo", "every", "follow_up_date",
    "assigned_agent_id", "assigned_agent_name", "close_reason",
    "cold_status", "cold_start_date", "cold_check_history", "deletion_request",
}

TARGET_FIELDS = {c.name for c in AgentTarget.__table__.columns} - {"id", "created_at"}


def _now():
    return datetime.now(timezone.utc)


def to_storage(value):
    """Converts domain values (enums, dates, nested models) to what the columns hold."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [to_storage(v) for v in value]
    return value


def _is_missing_relation(exc) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == "42P01":
        return True
    message = str(exc).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)


def translate_error(exc):
    """Maps a driver/ORM exception onto the gateway taxonomy; None means "not ours, re-raise"."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return TransientNetwork("Backend did not answer in time")
    if isinstance(exc, NoResultFound):
        return NotFound(str(exc))
    if isinstance(exc, DBAPIError) and _is_missing_relation(exc):
        return SchemaMissing(str(exc.orig) if exc.orig else str(exc))
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return TransientNetwork(str(exc))
    if isinstance(exc, (IntegrityError, DataError, StatementError)):
        return ValidationRejected(str(exc))
    return None


class PersistenceGateway:

    def __init__(self, session_factory, timeout: float = 10.0):
        self.session_factory = session_factory
        self.timeout = timeout

    @classmethod
    def from_context(cls, context):
        return cls(context.session_factory, timeout=context.settings.gateway_timeout)

    async def _run(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except Exception as e:
            error = translate_error(e)
            if error is None:
                raise
            error.operation = operation
            logger.error(f"[Gateway] {operation} failed: {type(error).__name__}: {e}")
            if error is e:
                raise
            raise error from e

    # --- Schema probe ---

    async def check_table_exists(self, table_name: str) -> bool:
        return await self._run("check_table_exists", self._check_table_exists, table_name)

    async def _check_table_exists(self, table_name):
        async with self.session_factory() as session:
            conn = await session.connection()
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table_name))

    async def probe_schema(self) -> Capabilities:
        tables = {}
        for name in REQUIRED_TABLES + OPTIONAL_TABLES:
            tables[name] = await self.check_table_exists(name)
        capabilities = Capabilities(tables=tables)
        if not capabilities.schema_ready:
            logger.warning(f"[Gateway] Schema incomplete, missing: {capabilities.missing_tables}")
        return capabilities

    # --- Profiles ---

    async def fetch_profiles(self):
        return await self._run("fetch_profiles", self._fetch_profiles)

    async def _fetch_profiles(self):
        async with self.session_factory() as session:
            result = await session.execute(select(Profile).order_by(Profile.name))
            return [schemas.Profile.model_validate(p) for p in result.scalars().all()]

    async def fetch_profile(self, user_id: str) -> schemas.Profile:
        return await self._run("fetch_profile", self._fetch_profile, user_id)

    async def _fetch_profile(self, user_id):
        async with self.session_factory() as session:
            profile = await session.get(Profile, user_id)
            if not profile:
                raise NotFound(f"Profile {user_id} not found")
            return schemas.Profile.model_validate(profile)

    async def ensure_profile(self, user_id: str, email: str, name: str = None) -> schemas.Profile:
        """Returns the profile for a signed-in user, creating it on first sign-in."""
        return await self._run("ensure_profile", self._ensure_profile, user_id, email, name)

    async def _ensure_profile(self, user_id, email, name):
        async with self.session_factory() as session:
            profile = await session.get(Profile, user_id)
            if not profile:
                email = email or ""
                profile = Profile(
                    id=user_id,
                    email=email,
                    name=name or email.split("@")[0] or "User",
                    role=schemas.Role.ADMIN.value if "admin" in email.lower() else schemas.Role.AGENT.value,
                    points=0,
                    theme_preference="dark",
                )
                session.add(profile)
                await session.commit()
                logger.info(f"[Gateway] Created profile {user_id} ({profile.role})")
            return schemas.Profile.model_validate(profile)

    async def update_profile_role(self, user_id: str, role: schemas.Role):
        return await self._run("update_profile_role", self._update_profile_role, user_id, role)

    async def _update_profile_role(self, user_id, role):
        async with self.session_factory() as session:
            profile = await session.get(Profile, user_id)
            if not profile:
                raise NotFound(f"Profile {user_id} not found")
            profile.role = to_storage(role)
            await session.commit()

    # --- Leads ---

    async def fetch_leads(self, user: schemas.Profile = None):
        """All leads for admins (or user=None), only owned leads for agents. Notes embedded."""
        return await self._run("fetch_leads", self._fetch_leads, user)

    async def _fetch_leads(self, user):
        async with self.session_factory() as session:
            stmt = select(Lead).options(selectinload(Lead.notes))
            if user is not None and user.role == schemas.Role.AGENT:
                stmt = stmt.where(Lead.assigned_agent_id == user.id)
            stmt = stmt.order_by(Lead.follow_up_date.asc(), Lead.created_at.asc())
            result = await session.execute(stmt)
            return [schemas.Lead.model_validate(l) for l in result.scalars().all()]

    async def fetch_lead(self, lead_id: str) -> schemas.Lead:
        return await self._run("fetch_lead", self._fetch_lead, lead_id)

    async def _fetch_lead(self, lead_id):
        async with self.session_factory() as session:
            stmt = select(Lead).options(selectinload(Lead.notes)).where(Lead.id == lead_id)
            lead = (await session.execute(stmt)).scalar_one_or_none()
            if not lead:
                raise NotFound(f"Lead {lead_id} not found")
            return schemas.Lead.model_validate(lead)

    async def create_lead(self, fields: dict, owner: schemas.Profile, initial_note: str = None, today: date = None) -> schemas.Lead:
        """Inserts the lead (owned by ``owner``), its optional first note and a ``created`` log in one unit of work."""
        return await self._run("create_lead", self._create_lead, fields, owner, initial_note, today)

    async def _create_lead(self, fields, owner, initial_note, today):
        unknown = set(fields) - LEAD_FIELDS
        if unknown:
            raise ValidationRejected(f"Unknown lead fields: {sorted(unknown)}")

        values = {k: to_storage(v) for k, v in fields.items()}
        values["assigned_agent_id"] = owner.id
        values["assigned_agent_name"] = owner.name
        if not values.get("follow_up_date"):
            values["follow_up_date"] = (today or date.today()).isoformat()

        async with self.session_factory() as session:
            lead = Lead(**values)
            session.add(lead)
            await session.flush()

            if initial_note and initial_note.strip():
                session.add(Note(lead_id=lead.id, text=initial_note.strip(), author_id=owner.id, author_name=owner.name))
            session.add(ActivityLog(
                lead_id=lead.id,
                agent_id=owner.id,
                action=schemas.ActivityAction.CREATED.value,
                details=f"Created lead {lead.name}",
            ))
            await session.commit()
            lead_id = lead.id

        logger.info(f"[Gateway] Lead {lead_id} created for agent {owner.id}")
        return await self._fetch_lead(lead_id)

    async def update_lead(self, lead_id: str, fields: dict):
        return await self._run("update_lead", self._update_lead, lead_id, fields)

    async def _update_lead(self, lead_id, fields):
        unknown = set(fields) - LEAD_FIELDS
        if unknown:
            raise ValidationRejected(f"Unknown lead fields: {sorted(unknown)}")

        async with self.session_factory() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFound(f"Lead {lead_id} not found")
            for key, value in fields.items():
                setattr(lead, key, to_storage(value))
            lead.updated_at = _now()
            await session.commit()

    async def delete_lead(self, lead_id: str):
        return await self._run("delete_lead", self._delete_lead, lead_id)

    async def _delete_lead(self, lead_id):
        async with self.session_factory() as session:
            await session.execute(delete(Note).where(Note.lead_id == lead_id))
            result = await session.execute(delete(Lead).where(Lead.id == lead_id))
            if result.rowcount == 0:
                await session.rollback()
                raise NotFound(f"Lead {lead_id} not found")
            await session.commit()
            logger.info(f"[Gateway] Lead {lead_id} deleted")

    async def request_deletion(self, lead_id: str, user: schemas.Profile) -> schemas.DeletionRequest:
        return await self._run("request_deletion", self._request_deletion, lead_id, user)

    async def _request_deletion(self, lead_id, user):
        request = schemas.DeletionRequest(
            status=schemas.DeletionStatus.PENDING,
            requested_by=user.name,
            requested_at=_now(),
        )
        async with self.session_factory() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFound(f"Lead {lead_id} not found")
            lead.deletion_request = to_storage(request)
            lead.updated_at = _now()
            session.add(ActivityLog(
                lead_id=lead_id,
                agent_id=user.id,
                action=schemas.ActivityAction.RULE_VIOLATION.value,
                details="Requested deletion for lead",
            ))
            await session.commit()
        return request

    async def resolve_deletion(self, lead_id: str, approve: bool):
        if approve:
            return await self.delete_lead(lead_id)
        return await self.update_lead(lead_id, {"deletion_request": None})

    # --- Notes & activity ---

    async def add_note(self, lead_id: str, text: str, author: schemas.Profile) -> schemas.Note:
        return await self._run("add_note", self._add_note, lead_id, text, author)

    async def _add_note(self, lead_id, text, author):
        async with self.session_factory() as session:
            if not await session.get(Lead, lead_id):
                raise NotFound(f"Lead {lead_id} not found")
            note = Note(lead_id=lead_id, text=text, author_id=author.id, author_name=author.name)
            session.add(note)
            await session.commit()
            return schemas.Note.model_validate(note)

    async def append_activity_log(self, lead_id: str, agent_id: str, action: schemas.ActivityAction, details: str) -> schemas.ActivityLog:
        return await self._run("append_activity_log", self._append_activity_log, lead_id, agent_id, action, details)

    async def _append_activity_log(self, lead_id, agent_id, action, details):
        async with self.session_factory() as session:
            entry = ActivityLog(lead_id=lead_id, agent_id=agent_id, action=to_storage(action), details=details)
            session.add(entry)
            await session.commit()
            return schemas.ActivityLog.model_validate(entry)

    async def fetch_activity_logs(self, limit: int = 100, action: schemas.ActivityAction = None, since: datetime = None):
        """Newest first. ``limit=None`` returns everything matching."""
        return await self._run("fetch_activity_logs", self._fetch_activity_logs, limit, action, since)

    async def _fetch_activity_logs(self, limit, action, since):
        async with self.session_factory() as session:
            stmt = select(ActivityLog)
            if action is not None:
                stmt = stmt.where(ActivityLog.action == to_storage(action))
            if since is not None:
                stmt = stmt.where(ActivityLog.created_at >= since)
            stmt = stmt.order_by(desc(ActivityLog.created_at))
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [schemas.ActivityLog.model_validate(a) for a in result.scalars().all()]

    # --- Points & payouts ---

    async def award_points(self, agent_id: str, agent_name: str, amount: int, reason: str, lead_id: str = None) -> schemas.PointsEntry:
        return await self._run("award_points", self._award_points, agent_id, agent_name, amount, reason, lead_id)

    async def _award_points(self, agent_id, agent_name, amount, reason, lead_id):
        async with self.session_factory() as session:
            profile = await session.get(Profile, agent_id)
            if not profile:
                raise NotFound(f"Profile {agent_id} not found")
            entry = PointsHistory(agent_id=agent_id, agent_name=agent_name, amount=amount, reason=reason, lead_id=lead_id)
            session.add(entry)
            profile.points = (profile.points or 0) + amount
            await session.commit()
            return schemas.PointsEntry.model_validate(entry)

    async def fetch_points_history(self, agent_id: str):
        return await self._run("fetch_points_history", self._fetch_points_history, agent_id)

    async def _fetch_points_history(self, agent_id):
        async with self.session_factory() as session:
            stmt = select(PointsHistory).where(PointsHistory.agent_id == agent_id).order_by(desc(PointsHistory.created_at))
            result = await session.execute(stmt)
            return [schemas.PointsEntry.model_validate(p) for p in result.scalars().all()]

    async def create_payout_request(self, agent: schemas.Profile, points: int, dollar_value: Decimal) -> schemas.PayoutRequest:
        return await self._run("create_payout_request", self._create_payout_request, agent, points, dollar_value)

    async def _create_payout_request(self, agent, points, dollar_value):
        async with self.session_factory() as session:
            request = PayoutRequest(
                agent_id=agent.id,
                agent_name=agent.name,
                points_requested=points,
                dollar_value=dollar_value,
                status=schemas.PayoutStatus.PENDING.value,
            )
            session.add(request)
            await session.commit()
            return schemas.PayoutRequest.model_validate(request)

    async def fetch_payout_requests(self, agent_id: str = None):
        """All requests when ``agent_id`` is None, otherwise that agent's own."""
        return await self._run("fetch_payout_requests", self._fetch_payout_requests, agent_id)

    async def _fetch_payout_requests(self, agent_id):
        async with self.session_factory() as session:
            stmt = select(PayoutRequest)
            if agent_id:
                stmt = stmt.where(PayoutRequest.agent_id == agent_id)
            stmt = stmt.order_by(desc(PayoutRequest.requested_at))
            result = await session.execute(stmt)
            return [schemas.PayoutRequest.model_validate(r) for r in result.scalars().all()]

    async def process_payout_request(self, request_id: str, action: schemas.PayoutStatus, admin_id: str, note: str = None) -> schemas.PayoutRequest:
        return await self._run("process_payout_request", self._process_payout_request, request_id, action, admin_id, note)

    async def _process_payout_request(self, request_id, action, admin_id, note):
        action = schemas.PayoutStatus(action)
        if action == schemas.PayoutStatus.PENDING:
            raise ValidationRejected("A payout request can only be approved or denied")

        async with self.session_factory() as session:
            request = await session.get(PayoutRequest, request_id)
            if not request:
                raise NotFound("Request not found")
            if request.status != schemas.PayoutStatus.PENDING.value:
                raise ValidationRejected(f"Request already {request.status}")

            if action == schemas.PayoutStatus.APPROVED:
                profile = await session.get(Profile, request.agent_id)
                current_points = (profile.points or 0) if profile else 0
                if current_points < request.points_requested:
                    raise InsufficientPoints("Insufficient points")
                profile.points = current_points - request.points_requested
                session.add(PointsHistory(
                    agent_id=request.agent_id,
                    agent_name=request.agent_name,
                    amount=-request.points_requested,
                    reason="Payout Approved",
                ))

            request.status = action.value
            request.processed_at = _now()
            request.processed_by = admin_id
            request.admin_note = note
            await session.commit()
            logger.info(f"[Gateway] Payout {request_id} {action.value} by {admin_id}")
            return schemas.PayoutRequest.model_validate(request)

    # --- Targets ---

    async def set_agent_target(self, fields: dict):
        """Upserts a monthly target keyed by (agent_id, month)."""
        return await self._run("set_agent_target", self._set_agent_target, fields)

    async def _set_agent_target(self, fields):
        if not fields.get("agent_id") or not fields.get("month"):
            raise ValidationRejected("Missing agent_id or month")
        unknown = set(fields) - TARGET_FIELDS
        if unknown:
            raise ValidationRejected(f"Unknown target fields: {sorted(unknown)}")

        values = {k: to_storage(v) for k, v in fields.items()}
        async with self.session_factory() as session:
            stmt = select(AgentTarget).where(
                AgentTarget.agent_id == values["agent_id"],
                AgentTarget.month == values["month"],
            )
            target = (await session.execute(stmt)).scalar_one_or_none()
            if target:
                for key, value in values.items():
                    setattr(target, key, value)
            else:
                if not values.get("agent_name"):
                    raise ValidationRejected("Missing agent_name")
                session.add(AgentTarget(**values))
            await session.commit()

    async def fetch_agent_targets(self, month):
        return await self._run("fetch_agent_targets", self._fetch_agent_targets, month)

    async def _fetch_agent_targets(self, month):
        async with self.session_factory() as session:
            stmt = select(AgentTarget).where(AgentTarget.month == to_storage(month)).order_by(AgentTarget.agent_name)
            result = await session.execute(stmt)
            return [schemas.AgentTarget.model_validate(t) for t in result.scalars().all()]

    # --- Personal tasks ---

    async def fetch_personal_tasks(self, user_id: str):
        return await self._run("fetch_personal_tasks", self._fetch_personal_tasks, user_id)

    async def _fetch_personal_tasks(self, user_id):
        async with self.session_factory() as session:
            stmt = select(PersonalTask).where(
                PersonalTask.user_id == user_id,
                PersonalTask.completed == False,  # noqa: E712
            ).order_by(desc(PersonalTask.created_at))
            result = await session.execute(stmt)
            return [schemas.PersonalTask.model_validate(t) for t in result.scalars().all()]

    async def add_personal_task(self, user_id: str, text: str) -> schemas.PersonalTask:
        return await self._run("add_personal_task", self._add_personal_task, user_id, text)

    async def _add_personal_task(self, user_id, text):
        async with self.session_factory() as session:
            task = PersonalTask(user_id=user_id, text=text, completed=False)
            session.add(task)
            await session.commit()
            return schemas.PersonalTask.model_validate(task)

    async def complete_personal_task(self, task_id: str):
        return await self._run("complete_personal_task", self._complete_personal_task, task_id)

    async def _complete_personal_task(self, task_id):
        async with self.session_factory() as session:
            task = await session.get(PersonalTask, task_id)
            if not task:
                raise NotFound(f"Task {task_id} not found")
            task.completed = True
            await session.commit()

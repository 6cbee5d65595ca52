from datetime import date
from typing import List, Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from leadtrack.config import AppContext, build_context
from leadtrack.database.session import create_schema
from leadtrack.exceptions import (
    InsufficientPoints,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SchemaMissing,
    TransientNetwork,
    ValidationRejected,
)
from leadtrack.schemas import (
    ActivityAction,
    AgentTarget,
    CloseWithReason,
    ColdCheck,
    ColdStatusChange,
    DateChange,
    EveryChange,
    FieldEdit,
    LeadUpdate,
    NewLead,
    PayoutStatus,
    Role,
    StatusChange,
    TodoChange,
)
from leadtrack.services.gateway import PersistenceGateway
from leadtrack.services.rewards_service import RewardsService
from leadtrack.services.task_service import TaskService
from leadtrack.services.workspace import LeadWorkspace, WorkspaceRegistry

app = FastAPI(title="Leadtrack API", description="Lead lifecycle and accountability backend")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex='.*',  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def init_state(app: FastAPI, context: AppContext = None):
    """Builds the per-process services. Called by the startup hook, or directly by tests."""
    context = context or build_context()
    if context.settings.auto_create_schema:
        # Auto-create tables for MVP (replaces manually running migrations for now)
        await create_schema(context.engine)

    gateway = PersistenceGateway.from_context(context)
    context.capabilities = await gateway.probe_schema()

    app.state.context = context
    app.state.gateway = gateway
    app.state.registry = WorkspaceRegistry(gateway, context.settings)
    app.state.rewards = RewardsService(gateway, context.settings.points_per_dollar)
    app.state.tasks = TaskService(gateway, context.capabilities)
    logger.info(f"[Startup] Schema ready: {context.capabilities.schema_ready}")


@app.on_event("startup")
async def startup_event():
    await init_state(app)


@app.on_event("shutdown")
async def shutdown_event():
    registry = getattr(app.state, "registry", None)
    if registry:
        await registry.aclose()
    context = getattr(app.state, "context", None)
    if context:
        await context.engine.dispose()


# --- Error mapping ---

ERROR_STATUS = [
    (InvalidTransition, 422),
    (PermissionDenied, 403),
    (NotFound, 404),
    (SchemaMissing, 503),
    (TransientNetwork, 503),
    (InsufficientPoints, 409),
    (ValidationRejected, 400),
]


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})
    return handler


for exc_class, status_code in ERROR_STATUS:
    app.add_exception_handler(exc_class, _error_handler(status_code))


# --- Dependencies ---

async def get_workspace(request: Request, x_user_id: Optional[str] = Header(default=None)) -> LeadWorkspace:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return await request.app.state.registry.get(x_user_id)


def require_admin(workspace: LeadWorkspace):
    if not workspace.user.is_admin:
        raise PermissionDenied("Only admins can do this")


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Leadtrack API is running (PostgreSQL + Celery)"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# --- Setup ---

@app.get("/api/setup")
async def read_setup(request: Request):
    capabilities = request.app.state.context.capabilities
    return {"schema_ready": capabilities.schema_ready, "missing_tables": capabilities.missing_tables}


@app.post("/api/setup")
async def run_setup(request: Request):
    """Creates missing tables, re-probes and re-syncs every open workspace."""
    context = request.app.state.context
    await create_schema(context.engine)
    context.capabilities = await request.app.state.gateway.probe_schema()
    request.app.state.tasks.capabilities = context.capabilities
    await request.app.state.registry.refresh_all()
    return {"schema_ready": context.capabilities.schema_ready, "missing_tables": context.capabilities.missing_tables}


# --- Session & profiles ---

class SessionRequest(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None


class RoleRequest(BaseModel):
    role: Role


@app.post("/api/session")
async def start_session(body: SessionRequest, request: Request):
    profile = await request.app.state.gateway.ensure_profile(body.user_id, body.email, body.name)
    workspace = await request.app.state.registry.get(profile.id)
    return {"profile": profile, "mode": workspace.mode, "sync_failed": workspace.sync_failed}


@app.get("/api/me")
async def read_me(workspace: LeadWorkspace = Depends(get_workspace)):
    return workspace.user


@app.get("/api/profiles")
async def read_profiles(workspace: LeadWorkspace = Depends(get_workspace)):
    require_admin(workspace)
    return workspace.profiles


@app.patch("/api/profiles/{user_id}/role")
async def update_role(user_id: str, body: RoleRequest, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    require_admin(workspace)
    await request.app.state.gateway.update_profile_role(user_id, body.role)
    # The target user's cached workspace was scoped to the old role
    await request.app.state.registry.drop(user_id)
    await workspace.refresh()
    return {"status": "success"}


@app.get("/api/notices")
async def read_notices(workspace: LeadWorkspace = Depends(get_workspace)):
    return {"mode": workspace.mode, "sync_failed": workspace.sync_failed, "notices": list(workspace.notices)}


@app.post("/api/refresh")
async def refresh_workspace(workspace: LeadWorkspace = Depends(get_workspace)):
    """Re-reads the caller's working copy from the database right away."""
    await workspace.reconciler.run_now()
    return {"mode": workspace.mode, "sync_failed": workspace.sync_failed}


# --- Leads: read models ---

@app.get("/api/leads")
async def read_leads(tab: Optional[str] = None, agent_id: Optional[str] = None, workspace: LeadWorkspace = Depends(get_workspace)):
    if tab is None:
        return workspace.leads
    return workspace.table(tab, agent_filter=agent_id)


@app.get("/api/leads/counts")
async def read_tab_counts(agent_id: Optional[str] = None, workspace: LeadWorkspace = Depends(get_workspace)):
    return workspace.tab_counts(agent_filter=agent_id)


@app.get("/api/leads/due")
async def read_due(workspace: LeadWorkspace = Depends(get_workspace)):
    return {"due": workspace.due_count()}


@app.get("/api/leads/{lead_id}")
async def read_lead(lead_id: str, workspace: LeadWorkspace = Depends(get_workspace)):
    return workspace.get_lead(lead_id)


@app.get("/api/leads/{lead_id}/transitions")
async def read_transitions(lead_id: str, workspace: LeadWorkspace = Depends(get_workspace)):
    return workspace.transitions(lead_id)


@app.get("/api/calendar/{year}/{month}")
async def read_calendar(year: int, month: int, agent_id: Optional[str] = None, workspace: LeadWorkspace = Depends(get_workspace)):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return workspace.calendar(year, month, agent_filter=agent_id)


@app.get("/api/accountability")
async def read_accountability(workspace: LeadWorkspace = Depends(get_workspace)):
    team = workspace.accountability()
    return {
        "overdue_count": team.overdue_count,
        "ignored_count": team.ignored_count,
        "violation_count": team.violation_count,
        "agents": [
            {
                "agent": a.agent,
                "overdue_count": a.overdue_count,
                "ignored_count": a.ignored_count,
                "violation_count": a.violation_count,
                "ignored_leads": a.ignored_leads,
            }
            for a in team.agents
        ],
    }


@app.get("/api/activity-logs")
async def read_activity_logs(
    request: Request,
    limit: int = 100,
    action: Optional[ActivityAction] = None,
    workspace: LeadWorkspace = Depends(get_workspace),
):
    require_admin(workspace)
    return await request.app.state.gateway.fetch_activity_logs(limit=limit, action=action)


# --- Leads: writes ---

class CreateLeadRequest(NewLead):
    initial_note: Optional[str] = None


class UpdateLeadRequest(BaseModel):
    intent: LeadUpdate


class LeadDetailsRequest(BaseModel):
    intents: List[LeadUpdate] = Field(default_factory=list)
    note: Optional[str] = None


class NoteRequest(BaseModel):
    text: str


class ResolveDeletionRequest(BaseModel):
    approve: bool


def dispatch_update(workspace: LeadWorkspace, lead_id: str, intent):
    """Routes one update intent to its write entry point."""
    if isinstance(intent, StatusChange):
        return workspace.request_status_change(lead_id, intent.status, intent.cold_status)
    if isinstance(intent, CloseWithReason):
        return workspace.request_close_with_reason(lead_id, intent.reason)
    if isinstance(intent, TodoChange):
        return workspace.request_todo_change(lead_id, intent.todo)
    if isinstance(intent, EveryChange):
        return workspace.request_every_change(lead_id, intent.every)
    if isinstance(intent, ColdStatusChange):
        return workspace.request_cold_status_change(lead_id, intent.cold_status)
    if isinstance(intent, DateChange):
        return workspace.request_date_change(lead_id, intent.follow_up_date, via_calendar=intent.via_calendar)
    if isinstance(intent, ColdCheck):
        return workspace.request_cold_check(lead_id)
    if isinstance(intent, FieldEdit):
        return workspace.request_field_edit(lead_id, name=intent.name, link=intent.link)
    raise InvalidTransition(f"Unsupported update intent: {type(intent).__name__}")


@app.post("/api/leads", status_code=201)
async def create_lead(body: CreateLeadRequest, workspace: LeadWorkspace = Depends(get_workspace)):
    new_lead = NewLead(**body.model_dump(exclude={"initial_note"}))
    lead = await workspace.create_lead(new_lead, initial_note=body.initial_note)
    if lead is None:
        raise HTTPException(status_code=502, detail="Failed to create lead. Please check your database connection.")
    return lead


@app.patch("/api/leads/{lead_id}", status_code=202)
async def update_lead(lead_id: str, body: UpdateLeadRequest, workspace: LeadWorkspace = Depends(get_workspace)):
    dispatch_update(workspace, lead_id, body.intent)
    return workspace.get_lead(lead_id)


@app.post("/api/leads/{lead_id}/details", status_code=202)
async def save_lead_details(lead_id: str, body: LeadDetailsRequest, workspace: LeadWorkspace = Depends(get_workspace)):
    workspace.save_lead_details(lead_id, body.intents, note=body.note)
    return workspace.get_lead(lead_id)


@app.post("/api/leads/{lead_id}/notes", status_code=202)
async def add_note(lead_id: str, body: NoteRequest, workspace: LeadWorkspace = Depends(get_workspace)):
    workspace.add_note(lead_id, body.text)
    return {"status": "accepted"}


@app.post("/api/leads/{lead_id}/deletion-request", status_code=202)
async def request_deletion(lead_id: str, workspace: LeadWorkspace = Depends(get_workspace)):
    workspace.request_deletion(lead_id)
    return workspace.get_lead(lead_id)


@app.post("/api/leads/{lead_id}/deletion-request/resolve", status_code=202)
async def resolve_deletion(lead_id: str, body: ResolveDeletionRequest, workspace: LeadWorkspace = Depends(get_workspace)):
    workspace.approve_deletion(lead_id, body.approve)
    return {"status": "accepted", "approved": body.approve}


@app.delete("/api/leads/{lead_id}")
async def delete_lead(lead_id: str, workspace: LeadWorkspace = Depends(get_workspace)):
    deleted = await workspace.delete_lead(lead_id)
    if not deleted:
        raise HTTPException(status_code=502, detail="Failed to delete lead.")
    return {"status": "success"}


# --- Targets ---

class TargetRequest(BaseModel):
    agent_id: str
    agent_name: Optional[str] = None
    month: date
    gp_target: Optional[float] = None
    sales_target: Optional[int] = None
    tp_target: Optional[float] = None
    tp_number_target: Optional[int] = None


@app.get("/api/targets/{month}", response_model=List[AgentTarget])
async def read_targets(month: date, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    targets = await request.app.state.gateway.fetch_agent_targets(month)
    if workspace.user.is_admin:
        return targets
    return [t for t in targets if t.agent_id == workspace.user.id]


@app.put("/api/targets")
async def set_target(body: TargetRequest, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    require_admin(workspace)
    await request.app.state.gateway.set_agent_target(body.model_dump(exclude_none=True))
    return {"status": "success"}


# --- Points & payouts ---

class AwardPointsRequest(BaseModel):
    agent_id: str
    amount: int
    reason: str
    lead_id: Optional[str] = None


class PayoutRequestBody(BaseModel):
    points: int


class ProcessPayoutRequest(BaseModel):
    action: PayoutStatus
    note: Optional[str] = None


@app.get("/api/points/{agent_id}")
async def read_points(agent_id: str, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    if agent_id != workspace.user.id:
        require_admin(workspace)
    return await request.app.state.rewards.get_history(agent_id)


@app.post("/api/points", status_code=201)
async def award_points(body: AwardPointsRequest, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    agent = await request.app.state.gateway.fetch_profile(body.agent_id)
    return await request.app.state.rewards.award_points(workspace.user, agent, body.amount, body.reason, body.lead_id)


@app.get("/api/payouts")
async def read_payouts(request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    return await request.app.state.rewards.list_requests(workspace.user)


@app.post("/api/payouts", status_code=201)
async def request_payout(body: PayoutRequestBody, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    return await request.app.state.rewards.request_payout(workspace.user, body.points)


@app.post("/api/payouts/{request_id}/process")
async def process_payout(request_id: str, body: ProcessPayoutRequest, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    result = await request.app.state.rewards.process_request(workspace.user, request_id, body.action, body.note)
    await workspace.refresh()
    return result


# --- Personal tasks ---

class TaskRequest(BaseModel):
    text: str


@app.get("/api/tasks")
async def read_tasks(request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    return await request.app.state.tasks.list_open(workspace.user.id)


@app.post("/api/tasks", status_code=201)
async def add_task(body: TaskRequest, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    return await request.app.state.tasks.add(workspace.user.id, body.text)


@app.post("/api/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request, workspace: LeadWorkspace = Depends(get_workspace)):
    await request.app.state.tasks.complete(task_id)
    return {"status": "success"}

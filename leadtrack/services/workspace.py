"""
Lead workspace: the optimistic update controller.

A workspace holds one user's working copy of the leads (plus, for admins,
profiles and the recent activity trail) and exposes the write entry points.
Every mutation follows the same contract:

1. validate the intent against the lead state model and patch the working
   copy immediately (``updated_at`` = now);
2. persist in a background task, the caller is never blocked on it;
3. on success either trust the optimistic copy or schedule a reconciling
   refresh after the operation's delay;
4. on failure post an error notice and force an immediate refresh so the
   working copy goes back to what the backend holds. Nothing is retried.
"""

import asyncio
import logging
import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Deque, List, Optional

from leadtrack.config import Settings
from leadtrack.exceptions import GatewayError, InvalidTransition, NotFound, PermissionDenied, SchemaMissing
from leadtrack.schemas import (
    ActivityAction,
    CloseWithReason,
    ColdCheck,
    ColdStatus,
    ColdStatusChange,
    DateChange,
    DeletionRequest,
    DeletionStatus,
    EveryChange,
    EveryFreq,
    FieldEdit,
    Lead,
    LeadStatus,
    NewLead,
    Profile,
    StatusChange,
    TodoChange,
    TodoStatus,
    utcnow,
)
from leadtrack.services.accountability import AccountabilityDetector, TeamAccountability
from leadtrack.services.lead_state import LeadStateMachine, TransitionOptions
from leadtrack.services.reconcile import ReconcileScheduler
from leadtrack.services.scheduling import CalendarMonth, calendar_month, count_due, local_today, reschedule_detail
from leadtrack.services.views import filter_by_agent, tab_counts, tab_leads

logger = logging.getLogger(__name__)

# Reconciliation policies
TRUST = "trust"  # keep the optimistic copy, no follow-up refresh
FAST = "fast"  # short delay, fast-feedback operations
SLOW = "slow"  # long delay, frequent low-risk inline edits
NOW = "now"  # refresh as soon as the write lands


class WorkspaceMode(str, Enum):
    READY = "ready"
    SETUP = "setup"  # backing tables missing, lead operations disabled


@dataclass
class Notice:
    level: str
    message: str
    lead_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


class LeadWorkspace:

    def __init__(self, gateway, user: Profile, settings: Settings = None, on_notice: Callable = None):
        self.gateway = gateway
        self.user = user
        self.settings = settings or Settings()
        self.tz = self.settings.tz
        self.state = LeadStateMachine()
        self.detector = AccountabilityDetector(tz=self.tz)
        self.on_notice = on_notice

        self.leads: List[Lead] = []
        self.profiles: List[Profile] = []
        self.activity_logs = []
        self.mode = WorkspaceMode.READY
        self.sync_failed = False
        self.notices: Deque[Notice] = deque(maxlen=self.settings.notice_limit)
        self.synced_at = None
        self.last_used = time.monotonic()

        self.reconciler = ReconcileScheduler(self.refresh)
        self._inflight = set()
        # Local edit counter per lead, and writes not yet confirmed by the backend
        self._versions = Counter()
        self._unsaved = Counter()

    def today(self) -> date:
        return local_today(self.tz)

    # --- Sync ---

    async def refresh(self) -> bool:
        """Pulls canonical state. On failure the stale copy is kept and ``sync_failed`` is raised.

        Leads patched locally while the fetch was running, or with a write the
        backend has not confirmed yet, keep their local copy.
        """
        versions = dict(self._versions)
        try:
            leads = await self.gateway.fetch_leads(self.user)
            profiles, logs = [], []
            if self.user.is_admin:
                profiles = await self.gateway.fetch_profiles()
                logs = await self.gateway.fetch_activity_logs(limit=self.settings.activity_log_limit)
            user = await self.gateway.fetch_profile(self.user.id)
        except SchemaMissing:
            self.sync_failed = True
            self._enter_setup()
            return False
        except GatewayError as e:
            logger.warning(f"[Workspace] Refresh failed for {self.user.id}, keeping stale data: {e}")
            self.sync_failed = True
            return False

        self.leads = self._merge(leads, versions)
        self.profiles = profiles
        self.activity_logs = logs
        self.user = user
        self.sync_failed = False
        self.mode = WorkspaceMode.READY
        self.synced_at = time.monotonic()
        return True

    def is_stale(self, max_age: float) -> bool:
        if self.synced_at is None:
            return True
        return time.monotonic() - self.synced_at >= max_age

    def patch_locally(self, lead_id: str, patch: dict) -> Lead:
        lead = self.get_lead(lead_id)
        updated = lead.model_copy(update={**patch, "updated_at": utcnow()})
        self.leads = [updated if l.id == lead_id else l for l in self.leads]
        self._versions[lead_id] += 1
        return updated

    def remove_locally(self, lead_id: str):
        self.leads = [l for l in self.leads if l.id != lead_id]
        self._versions[lead_id] += 1

    def _merge(self, fetched: List[Lead], versions: dict) -> List[Lead]:
        held = {lead_id for lead_id, v in self._versions.items() if v != versions.get(lead_id, 0)}
        held.update(self._unsaved)
        if not held:
            return fetched

        logger.info(f"[Workspace] Refresh for {self.user.id} kept local copies of {len(held)} lead(s)")
        local = {l.id: l for l in self.leads}
        merged = []
        for lead in fetched:
            if lead.id not in held:
                merged.append(lead)
            elif lead.id in local:
                merged.append(local[lead.id])
        return merged

    def get_lead(self, lead_id: str) -> Lead:
        for lead in self.leads:
            if lead.id == lead_id:
                return lead
        raise NotFound(f"Lead {lead_id} is not in this workspace")

    async def drain(self):
        """Waits for every in-flight persistence task."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self):
        await self.drain()
        await self.reconciler.aclose()

    # --- Read models ---

    def table(self, tab, agent_filter: str = None) -> List[Lead]:
        return tab_leads(self.leads, tab, self.user, self.today(), self._agent_filter(agent_filter))

    def tab_counts(self, agent_filter: str = None) -> dict:
        return tab_counts(self.leads, self.user, self.today(), self._agent_filter(agent_filter))

    def calendar(self, year: int, month: int, agent_filter: str = None) -> CalendarMonth:
        leads = filter_by_agent(self.leads, self._agent_filter(agent_filter))
        return calendar_month(leads, year, month, self.today())

    def due_count(self) -> int:
        return count_due(self.leads, self.today())

    def transitions(self, lead_id: str) -> TransitionOptions:
        return self.state.options(self.get_lead(lead_id), self.today())

    def accountability(self) -> TeamAccountability:
        self._require_admin()
        return self.detector.summarize_team(self.profiles, self.leads, self.activity_logs, self.today())

    # --- Write entry points ---

    def request_status_change(self, lead_id: str, status: LeadStatus, cold_status: ColdStatus = None):
        self._ensure_ready()
        previous = self.get_lead(lead_id).status
        detail = f"Status changed from {previous.value} to {LeadStatus(status).value}"
        return self._mutate(
            lead_id,
            [StatusChange(status=status, cold_status=cold_status)],
            FAST,
            (ActivityAction.STATUS_CHANGED, detail),
        )

    def request_close_with_reason(self, lead_id: str, reason: str):
        return self._mutate(lead_id, [CloseWithReason(reason=reason)], TRUST)

    def request_todo_change(self, lead_id: str, todo: TodoStatus):
        return self._mutate(lead_id, [TodoChange(todo=todo)], SLOW)

    def request_every_change(self, lead_id: str, every: Optional[EveryFreq]):
        return self._mutate(lead_id, [EveryChange(every=every)], SLOW)

    def request_cold_status_change(self, lead_id: str, cold_status: ColdStatus):
        return self._mutate(lead_id, [ColdStatusChange(cold_status=cold_status)], SLOW)

    def request_date_change(self, lead_id: str, new_date: date, via_calendar: bool = False):
        """Reschedules a lead; ``via_calendar`` marks a drag between calendar cells."""
        return self._mutate(
            lead_id,
            [DateChange(follow_up_date=new_date, via_calendar=via_calendar)],
            FAST,
            (ActivityAction.DATE_CHANGED, reschedule_detail(new_date, via_calendar)),
        )

    def move_on_calendar(self, lead_id: str, new_date: date):
        return self.request_date_change(lead_id, new_date, via_calendar=True)

    def request_cold_check(self, lead_id: str):
        return self._mutate(lead_id, [ColdCheck()], TRUST)

    def request_field_edit(self, lead_id: str, name: str = None, link: str = None):
        self._require_admin()
        return self._mutate(lead_id, [FieldEdit(name=name, link=link)], FAST)

    def save_lead_details(self, lead_id: str, intents: list, note: str = None):
        """Detail form save: one optimistic patch, then note, field update and a single activity entry."""
        self._ensure_ready()
        if any(isinstance(i, FieldEdit) for i in intents):
            self._require_admin()
        lead = self.get_lead(lead_id)
        patch = self.state.apply_all(lead, intents, self.today())
        note = (note or "").strip()
        if not patch and not note:
            return None

        action = None
        if "status" in patch or "todo" in patch:
            action = ActivityAction.STATUS_CHANGED
        elif "follow_up_date" in patch:
            action = ActivityAction.DATE_CHANGED

        self.reconciler.cancel_pending()
        if patch:
            self.patch_locally(lead_id, patch)
        return self._spawn_write(lead_id, self._persist_details(lead_id, patch, note, action))

    def add_note(self, lead_id: str, text: str):
        self._ensure_ready()
        text = (text or "").strip()
        if not text:
            raise InvalidTransition("A note cannot be empty")
        self.get_lead(lead_id)
        return self._spawn_write(lead_id, self._persist_note(lead_id, text))

    async def create_lead(self, new_lead: NewLead, initial_note: str = None) -> Optional[Lead]:
        """Not optimistic: the backend assigns the id. Returns None if the insert failed."""
        self._ensure_ready()
        fields = self.state.initial_fields(new_lead, self.today())
        try:
            lead = await self.gateway.create_lead(fields, self.user, initial_note=initial_note, today=self.today())
        except GatewayError as e:
            await self._recover(e, None, "Failed to create lead. Please check your database connection.")
            return None
        await self.reconciler.run_now()
        return lead

    def request_deletion(self, lead_id: str):
        """Agent asks an admin to delete the lead; the row stays until approved."""
        self._ensure_ready()
        self.get_lead(lead_id)
        self.reconciler.cancel_pending()
        pending = DeletionRequest(status=DeletionStatus.PENDING, requested_by=self.user.name, requested_at=utcnow())
        self.patch_locally(lead_id, {"deletion_request": pending})
        return self._spawn_write(lead_id, self._persist_call(
            lead_id,
            self.gateway.request_deletion(lead_id, self.user),
            "Failed to request deletion. Please try again.",
        ))

    def approve_deletion(self, lead_id: str, approve: bool):
        self._ensure_ready()
        self._require_admin()
        self.get_lead(lead_id)
        self.reconciler.cancel_pending()
        if approve:
            self.remove_locally(lead_id)
        else:
            self.patch_locally(lead_id, {"deletion_request": None})
        return self._spawn_write(lead_id, self._persist_call(
            lead_id,
            self.gateway.resolve_deletion(lead_id, approve),
            "Failed to resolve the deletion request.",
        ))

    def delete_lead(self, lead_id: str):
        """Admin hard delete; the lead leaves the working copy only once the backend confirms."""
        self._ensure_ready()
        self._require_admin()
        self.get_lead(lead_id)
        return self._spawn_write(lead_id, self._persist_delete(lead_id))

    # --- Internals ---

    def _mutate(self, lead_id: str, intents: list, policy: str, activity: tuple = None):
        self._ensure_ready()
        lead = self.get_lead(lead_id)
        patch = self.state.apply_all(lead, intents, self.today())
        # A stale pending refresh would overwrite this patch before it lands
        self.reconciler.cancel_pending()
        self.patch_locally(lead_id, patch)
        return self._spawn_write(lead_id, self._persist(lead_id, patch, policy, activity))

    async def _persist(self, lead_id, patch, policy, activity):
        try:
            with self._writing(lead_id):
                await self.gateway.update_lead(lead_id, patch)
                if activity:
                    action, details = activity
                    await self.gateway.append_activity_log(lead_id, self.user.id, action, details)
        except GatewayError as e:
            await self._recover(e, lead_id, "Update failed. Please try again.")
            return False
        await self._reconcile(policy)
        return True

    async def _persist_details(self, lead_id, patch, note, action):
        try:
            with self._writing(lead_id):
                if note:
                    await self.gateway.add_note(lead_id, note, self.user)
                    await self.gateway.append_activity_log(lead_id, self.user.id, ActivityAction.NOTE_ADDED, "Added note")
                if patch:
                    await self.gateway.update_lead(lead_id, patch)
                    if action:
                        await self.gateway.append_activity_log(lead_id, self.user.id, action, "Updated lead details via modal")
        except GatewayError as e:
            await self._recover(e, lead_id, "Changes could not be saved. Reverting...")
            return False
        await self._reconcile(FAST)
        return True

    async def _persist_note(self, lead_id, text):
        try:
            with self._writing(lead_id):
                await self.gateway.add_note(lead_id, text, self.user)
                await self.gateway.append_activity_log(lead_id, self.user.id, ActivityAction.NOTE_ADDED, "Added note")
        except GatewayError as e:
            await self._recover(e, lead_id, "Failed to add note. Please try again.")
            return False
        await self._reconcile(NOW)
        return True

    async def _persist_call(self, lead_id, call, message):
        try:
            with self._writing(lead_id):
                await call
        except GatewayError as e:
            await self._recover(e, lead_id, message)
            return False
        await self._reconcile(NOW)
        return True

    async def _persist_delete(self, lead_id):
        try:
            with self._writing(lead_id):
                await self.gateway.delete_lead(lead_id)
                self.remove_locally(lead_id)
        except GatewayError as e:
            await self._recover(e, lead_id, "Failed to delete lead.")
            return False
        return True

    async def _reconcile(self, policy: str):
        if policy == TRUST:
            return
        if policy == NOW:
            await self.reconciler.run_now()
            return
        delay = self.settings.reconcile_fast_delay if policy == FAST else self.settings.reconcile_slow_delay
        self.reconciler.schedule(delay)

    async def _recover(self, error: GatewayError, lead_id, message: str):
        self._notify("error", message, lead_id)
        if isinstance(error, SchemaMissing):
            self._enter_setup()
            return
        await self.reconciler.run_now()

    def _notify(self, level: str, message: str, lead_id: str = None):
        notice = Notice(level=level, message=message, lead_id=lead_id)
        self.notices.append(notice)
        if self.on_notice:
            self.on_notice(notice)

    def _enter_setup(self):
        if self.mode != WorkspaceMode.SETUP:
            logger.error(f"[Workspace] Backing schema missing, switching {self.user.id} to setup mode")
        self.mode = WorkspaceMode.SETUP
        self.reconciler.cancel_pending()

    def _ensure_ready(self):
        if self.mode == WorkspaceMode.SETUP:
            raise SchemaMissing("Database setup required before leads can be changed")

    def _require_admin(self):
        if not self.user.is_admin:
            raise PermissionDenied("Only admins can do this")

    def _agent_filter(self, agent_filter):
        # Agents only ever see their own leads; the filter is an admin tool
        return agent_filter if self.user.is_admin else None

    def _spawn_write(self, lead_id: str, coro):
        self._unsaved[lead_id] += 1
        return self._spawn(coro)

    @contextmanager
    def _writing(self, lead_id: str):
        try:
            yield
        finally:
            self._unsaved[lead_id] -= 1
            if self._unsaved[lead_id] <= 0:
                del self._unsaved[lead_id]

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Workspace] Background write crashed: {task.exception()!r}")


class WorkspaceRegistry:
    """One workspace per signed-in user, created on first use.

    A cached workspace older than ``workspace_max_age`` is re-read before it is
    handed out, so writes made through other users' workspaces show up. Idle
    workspaces are closed after ``workspace_idle_timeout``.
    """

    def __init__(self, gateway, settings: Settings = None):
        self.gateway = gateway
        self.settings = settings or Settings()
        self._workspaces = {}
        self._locks = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._workspaces

    def __len__(self) -> int:
        return len(self._workspaces)

    async def get(self, user_id: str) -> LeadWorkspace:
        workspace = self._workspaces.get(user_id)
        if workspace is None:
            workspace = await self._open(user_id)
        elif workspace.is_stale(self.settings.workspace_max_age):
            await workspace.refresh()
        workspace.last_used = time.monotonic()
        await self.evict_idle(keep=user_id)
        return workspace

    async def _open(self, user_id: str) -> LeadWorkspace:
        # Only callers for the same user wait on each other
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            workspace = self._workspaces.get(user_id)
            if workspace is None:
                user = await self.gateway.fetch_profile(user_id)
                workspace = LeadWorkspace(self.gateway, user, self.settings)
                await workspace.refresh()
                self._workspaces[user_id] = workspace
            return workspace

    async def evict_idle(self, keep: str = None) -> int:
        cutoff = time.monotonic() - self.settings.workspace_idle_timeout
        idle = [uid for uid, ws in self._workspaces.items() if uid != keep and ws.last_used <= cutoff]
        for user_id in idle:
            logger.info(f"[Workspace] Closing idle workspace for {user_id}")
            await self.drop(user_id)
        return len(idle)

    async def refresh_all(self):
        """Re-syncs every open workspace, e.g. after the schema was created."""
        for workspace in list(self._workspaces.values()):
            await workspace.refresh()

    async def drop(self, user_id: str):
        workspace = self._workspaces.pop(user_id, None)
        self._locks.pop(user_id, None)
        if workspace:
            await workspace.close()

    async def aclose(self):
        for user_id in list(self._workspaces):
            await self.drop(user_id)

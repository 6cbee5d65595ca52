"""
Agent Accountability

Derives per-agent compliance metrics for the supervisor dashboard from the
lead set and the activity trail. Pure derivation, nothing is persisted here.

Cold rule: a cold/Unreached lead must be checked once per day for its first
four days. On day N (0-based) it needs min(4, N + 1) check-ins; fewer is a
violation until the agent catches up.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List

from leadtrack.schemas import ActivityAction, ActivityLog, ColdStatus, Lead, LeadStatus, Profile, Role
from leadtrack.services.scheduling import is_overdue, to_local_date

COLD_CHECK_DAYS = 4


@dataclass
class AgentAccountability:
    agent: Profile
    overdue_leads: List[Lead] = field(default_factory=list)
    cold_violations: List[Lead] = field(default_factory=list)
    ignored_leads: List[Lead] = field(default_factory=list)
    ignored_count: int = 0

    @property
    def overdue_count(self) -> int:
        return len(self.overdue_leads)

    @property
    def violation_count(self) -> int:
        return len(self.cold_violations)


@dataclass
class TeamAccountability:
    agents: List[AgentAccountability] = field(default_factory=list)

    @property
    def overdue_count(self) -> int:
        return sum(a.overdue_count for a in self.agents)

    @property
    def ignored_count(self) -> int:
        return sum(a.ignored_count for a in self.agents)

    @property
    def violation_count(self) -> int:
        return sum(a.violation_count for a in self.agents)

    def for_agent(self, agent_id: str):
        return next((a for a in self.agents if a.agent.id == agent_id), None)


class AccountabilityDetector:

    def __init__(self, tz=None):
        self.tz = tz

    def overdue_leads(self, leads: List[Lead], agent_id: str, today: date) -> List[Lead]:
        return [l for l in leads if l.assigned_agent_id == agent_id and is_overdue(l, today)]

    def ignored_leads(self, overdue: List[Lead], logs: List[ActivityLog], agent_id: str, today: date) -> List[Lead]:
        """Overdue leads the agent has not written a note on today."""
        noted_today = {
            log.lead_id
            for log in logs
            if log.agent_id == agent_id
            and log.action == ActivityAction.NOTE_ADDED
            and to_local_date(log.created_at, self.tz) == today
        }
        return [l for l in overdue if l.id not in noted_today]

    def required_cold_checks(self, cold_start: date, today: date) -> int:
        elapsed_days = (today - cold_start).days
        return min(COLD_CHECK_DAYS, elapsed_days + 1)

    def is_cold_violation(self, lead: Lead, today: date) -> bool:
        if lead.status != LeadStatus.COLD or lead.cold_status != ColdStatus.UNREACHED:
            return False
        if lead.cold_start_date is None:
            return False
        return len(lead.cold_check_history) < self.required_cold_checks(lead.cold_start_date, today)

    def cold_violations(self, leads: List[Lead], agent_id: str, today: date) -> List[Lead]:
        return [l for l in leads if l.assigned_agent_id == agent_id and self.is_cold_violation(l, today)]

    def summarize_agent(self, agent: Profile, leads: List[Lead], logs: List[ActivityLog], today: date) -> AgentAccountability:
        overdue = self.overdue_leads(leads, agent.id, today)
        ignored = self.ignored_leads(overdue, logs, agent.id, today)
        violations = self.cold_violations(leads, agent.id, today)

        # Drill-down list is deduplicated by lead id; the count below is not
        drill_down = {}
        for lead in ignored + violations:
            drill_down.setdefault(lead.id, lead)

        return AgentAccountability(
            agent=agent,
            overdue_leads=overdue,
            cold_violations=violations,
            ignored_leads=list(drill_down.values()),
            # Literal behaviour of the dashboard: a lead both ignored and in violation counts twice
            ignored_count=len(ignored) + len(violations),
        )

    def summarize_team(self, profiles: List[Profile], leads: List[Lead], logs: List[ActivityLog], today: date) -> TeamAccountability:
        agents = [p for p in profiles if p.role == Role.AGENT]
        return TeamAccountability(agents=[self.summarize_agent(a, leads, logs, today) for a in agents])

    def violation_detail(self, lead: Lead, today: date) -> str:
        required = self.required_cold_checks(lead.cold_start_date, today)
        return f"Cold check-in missed ({len(lead.cold_check_history)}/{required} checks)"

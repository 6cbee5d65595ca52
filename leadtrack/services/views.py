"""
Tab filtering and ranking for the lead table, calendar and tab counters.
"""

from datetime import date
from typing import Dict, List, Optional

from leadtrack.schemas import Lead, LeadStatus, PIPELINE_STATUSES, Profile, Role
from leadtrack.services.scheduling import LEADING_INT, is_suppressed

UNPARSEABLE_FREQUENCY = 999


def frequency_value(every: Optional[str]) -> int:
    """Sort key for the progressive tab: manual first, then by days, junk last."""
    if not every or every.strip().upper() == "MANUAL":
        return 0
    match = LEADING_INT.search(every)
    return int(match.group(1)) if match else UNPARSEABLE_FREQUENCY


def filter_by_agent(leads: List[Lead], agent_id: Optional[str]) -> List[Lead]:
    if not agent_id:
        return list(leads)
    return [lead for lead in leads if lead.assigned_agent_id == agent_id]


def visible_leads(leads: List[Lead], viewer: Profile, today: date, tab, agent_filter: Optional[str] = None) -> List[Lead]:
    """Agent filter first, then the agent-only suppression of future follow-ups on pipeline tabs."""
    scoped = filter_by_agent(leads, agent_filter)
    if viewer.role == Role.AGENT and _tab_value(tab) in {s.value for s in PIPELINE_STATUSES}:
        scoped = [lead for lead in scoped if not is_suppressed(lead, today)]
    return scoped


def tab_leads(leads: List[Lead], tab, viewer: Profile, today: date, agent_filter: Optional[str] = None) -> List[Lead]:
    tab_value = _tab_value(tab)
    scoped = visible_leads(leads, viewer, today, tab_value, agent_filter)
    in_tab = [lead for lead in scoped if lead.status.value.lower() == tab_value]

    if tab_value == LeadStatus.PROGRESSIVE.value:
        # sorted() is stable, ties keep input order
        return sorted(in_tab, key=lambda lead: frequency_value(lead.every))

    if viewer.role == Role.ADMIN and not agent_filter:
        return sorted(in_tab, key=lambda lead: (lead.assigned_agent_name or "").lower())

    return in_tab


def tab_counts(leads: List[Lead], viewer: Profile, today: date, agent_filter: Optional[str] = None) -> Dict[str, int]:
    return {
        status.value: len(tab_leads(leads, status, viewer, today, agent_filter))
        for status in LeadStatus
    }


def _tab_value(tab) -> str:
    if isinstance(tab, LeadStatus):
        return tab.value
    return (tab or "").strip().lower()

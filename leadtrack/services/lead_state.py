"""
Lead State Model

Legal states and transition side effects for a lead. Nothing here touches
persistence: ``apply`` turns an update intent into the patch of changed
fields, the workspace decides how to persist it.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from leadtrack.exceptions import DuplicateColdCheck, InvalidTransition
from leadtrack.schemas import (
    ColdCheck,
    ColdStatus,
    ColdStatusChange,
    CloseWithReason,
    DateChange,
    EveryChange,
    EveryFreq,
    FieldEdit,
    Lead,
    LeadStatus,
    NewLead,
    RECURRENCE_STATUSES,
    StatusChange,
    TodoChange,
    TodoStatus,
)


@dataclass
class TransitionOptions:
    """What a form may offer for a lead in its current state."""
    statuses: List[LeadStatus] = field(default_factory=list)
    todos: List[TodoStatus] = field(default_factory=list)
    todo_editable: bool = True
    every_editable: bool = False
    every_options: List[Optional[EveryFreq]] = field(default_factory=list)
    cold_fields: bool = False
    close_requires_reason: bool = True
    can_check_in: bool = False


class LeadStateMachine:

    def allowed_todos(self, lead: Lead) -> List[TodoStatus]:
        if lead.status == LeadStatus.COLD:
            return []
        if lead.status == LeadStatus.WARM:
            return [TodoStatus.FOLLOWUP]
        return list(TodoStatus)

    def options(self, lead: Lead, today: date) -> TransitionOptions:
        every_editable = lead.status in RECURRENCE_STATUSES
        is_cold = lead.status == LeadStatus.COLD
        return TransitionOptions(
            statuses=list(LeadStatus),
            todos=self.allowed_todos(lead),
            todo_editable=not is_cold,
            every_editable=every_editable,
            every_options=[None] + list(EveryFreq) if every_editable else [],
            cold_fields=is_cold,
            can_check_in=is_cold and today not in lead.cold_check_history,
        )

    def apply(self, lead: Lead, intent, today: date) -> dict:
        """Returns the field patch produced by ``intent``; raises InvalidTransition if it is illegal."""
        if isinstance(intent, StatusChange):
            return self._status(lead, intent, today)
        if isinstance(intent, CloseWithReason):
            return self._close(intent.reason)
        if isinstance(intent, TodoChange):
            return self._todo(lead, intent.todo)
        if isinstance(intent, DateChange):
            return {"follow_up_date": intent.follow_up_date}
        if isinstance(intent, EveryChange):
            return self._every(lead, intent.every)
        if isinstance(intent, ColdStatusChange):
            if lead.status != LeadStatus.COLD:
                raise InvalidTransition("Cold status only applies to cold leads")
            return {"cold_status": intent.cold_status}
        if isinstance(intent, ColdCheck):
            return self._cold_check(lead, today)
        if isinstance(intent, FieldEdit):
            return self._fields(intent)
        raise InvalidTransition(f"Unsupported update intent: {type(intent).__name__}")

    def initial_fields(self, new_lead: NewLead, today: date) -> dict:
        """Column values for a lead about to be created, with the same invariants as a status change."""
        status = new_lead.status
        if status == LeadStatus.CLOSED:
            raise InvalidTransition("A lead cannot be created closed")
        if new_lead.every is not None and status not in RECURRENCE_STATUSES:
            raise InvalidTransition(f"Recurrence cannot be set on a {status.value} lead")

        fields = {
            "name": new_lead.name.strip(),
            "link": (new_lead.link or "").strip() or None,
            "status": status,
            "todo": TodoStatus.FOLLOWUP if status == LeadStatus.WARM else new_lead.todo,
            "every": new_lead.every.value if new_lead.every else None,
            "follow_up_date": new_lead.follow_up_date or today,
        }
        if not fields["name"]:
            raise InvalidTransition("Lead name cannot be empty")
        if status == LeadStatus.COLD:
            fields["cold_status"] = new_lead.cold_status or ColdStatus.UNREACHED
            fields["cold_start_date"] = today
            fields["cold_check_history"] = []
        return fields

    def apply_all(self, lead: Lead, intents, today: date) -> dict:
        """Folds several intents into one patch; each sees the effect of the previous ones."""
        patch = {}
        current = lead
        for intent in intents:
            step = self.apply(current, intent, today)
            patch.update(step)
            current = current.model_copy(update=step)
        return patch

    def _status(self, lead: Lead, intent: StatusChange, today: date) -> dict:
        new_status = intent.status
        if new_status == LeadStatus.CLOSED:
            # Two-phase: the caller must come back with a reason
            raise InvalidTransition("Closing a lead requires a close reason")

        patch = {"status": new_status}
        if new_status == LeadStatus.WARM:
            patch["todo"] = TodoStatus.FOLLOWUP
        elif new_status == LeadStatus.COLD:
            patch["cold_status"] = intent.cold_status or lead.cold_status or ColdStatus.UNREACHED
            if lead.cold_start_date is None:
                patch["cold_start_date"] = today
        elif intent.cold_status is not None:
            raise InvalidTransition("Cold status only applies to cold leads")
        return patch

    def _close(self, reason: str) -> dict:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidTransition("Closing a lead requires a close reason")
        return {"status": LeadStatus.CLOSED, "close_reason": reason}

    def _todo(self, lead: Lead, todo: TodoStatus) -> dict:
        if lead.status == LeadStatus.COLD:
            raise InvalidTransition("To-do is not editable while a lead is cold")
        if lead.status == LeadStatus.WARM and todo != TodoStatus.FOLLOWUP:
            raise InvalidTransition("Warm leads can only have a follow-up to-do")
        return {"todo": todo}

    def _every(self, lead: Lead, every: Optional[EveryFreq]) -> dict:
        if lead.status not in RECURRENCE_STATUSES:
            raise InvalidTransition(f"Recurrence cannot be set on a {lead.status.value} lead")
        return {"every": every.value if every else None}

    def _cold_check(self, lead: Lead, day: date) -> dict:
        if lead.status != LeadStatus.COLD:
            raise InvalidTransition("Check-ins are only recorded for cold leads")
        if day in lead.cold_check_history:
            raise DuplicateColdCheck("Already performed a follow-up today.")
        return {"cold_check_history": list(lead.cold_check_history) + [day]}

    def _fields(self, intent: FieldEdit) -> dict:
        patch = {}
        if intent.name is not None:
            name = intent.name.strip()
            if not name:
                raise InvalidTransition("Lead name cannot be empty")
            patch["name"] = name
        if intent.link is not None:
            patch["link"] = intent.link.strip() or None
        return patch


lead_state = LeadStateMachine()

import unittest
from datetime import timedelta

from helpers import TODAY, make_lead

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
    LeadStatus,
    NewLead,
    StatusChange,
    TodoChange,
    TodoStatus,
)
from leadtrack.services.lead_state import LeadStateMachine


class TestStatusTransitions(unittest.TestCase):
    def setUp(self):
        self.machine = LeadStateMachine()

    def test_warm_forces_followup(self):
        lead = make_lead(status=LeadStatus.HOT, todo=TodoStatus.CALLBACK)
        patch = self.machine.apply(lead, StatusChange(status=LeadStatus.WARM), TODAY)
        self.assertEqual(patch, {"status": LeadStatus.WARM, "todo": TodoStatus.FOLLOWUP})

    def test_closed_requires_reason(self):
        lead = make_lead()
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, StatusChange(status=LeadStatus.CLOSED), TODAY)

    def test_close_with_reason(self):
        lead = make_lead()
        patch = self.machine.apply(lead, CloseWithReason(reason="  Went with a competitor "), TODAY)
        self.assertEqual(patch["status"], LeadStatus.CLOSED)
        self.assertEqual(patch["close_reason"], "Went with a competitor")

    def test_close_reason_cannot_be_blank(self):
        with self.assertRaises(ValueError):
            CloseWithReason(reason="   ")

    def test_entering_cold_stamps_start_and_default_status(self):
        lead = make_lead(status=LeadStatus.HOT)
        patch = self.machine.apply(lead, StatusChange(status=LeadStatus.COLD), TODAY)
        self.assertEqual(patch["cold_status"], ColdStatus.UNREACHED)
        self.assertEqual(patch["cold_start_date"], TODAY)

    def test_reentering_cold_keeps_first_start(self):
        started = TODAY - timedelta(days=10)
        lead = make_lead(status=LeadStatus.HOT, cold_start_date=started, cold_status=ColdStatus.UNRESPONSIVE)
        patch = self.machine.apply(lead, StatusChange(status=LeadStatus.COLD), TODAY)
        self.assertNotIn("cold_start_date", patch)
        self.assertEqual(patch["cold_status"], ColdStatus.UNRESPONSIVE)

    def test_leaving_cold_keeps_cold_fields(self):
        lead = make_lead(status=LeadStatus.COLD, cold_status=ColdStatus.UNREACHED, cold_start_date=TODAY)
        patch = self.machine.apply(lead, StatusChange(status=LeadStatus.HOT), TODAY)
        self.assertEqual(patch, {"status": LeadStatus.HOT})

    def test_cold_status_rejected_outside_cold(self):
        lead = make_lead(status=LeadStatus.HOT)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, StatusChange(status=LeadStatus.WARM, cold_status=ColdStatus.UNREACHED), TODAY)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, ColdStatusChange(cold_status=ColdStatus.UNRESPONSIVE), TODAY)


class TestFieldRules(unittest.TestCase):
    def setUp(self):
        self.machine = LeadStateMachine()

    def test_todo_locked_while_cold(self):
        lead = make_lead(status=LeadStatus.COLD, cold_status=ColdStatus.UNREACHED, cold_start_date=TODAY)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, TodoChange(todo=TodoStatus.CALLBACK), TODAY)

    def test_warm_only_accepts_followup(self):
        lead = make_lead(status=LeadStatus.WARM, todo=TodoStatus.FOLLOWUP)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, TodoChange(todo=TodoStatus.SALE), TODAY)
        self.assertEqual(self.machine.apply(lead, TodoChange(todo=TodoStatus.FOLLOWUP), TODAY), {"todo": TodoStatus.FOLLOWUP})

    def test_every_only_in_recurrence_statuses(self):
        hot = make_lead(status=LeadStatus.HOT)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(hot, EveryChange(every=EveryFreq.SEVEN_DAYS), TODAY)

        progressive = make_lead(status=LeadStatus.PROGRESSIVE)
        self.assertEqual(self.machine.apply(progressive, EveryChange(every=EveryFreq.SEVEN_DAYS), TODAY), {"every": "7"})
        self.assertEqual(self.machine.apply(progressive, EveryChange(every=None), TODAY), {"every": None})

    def test_date_change(self):
        lead = make_lead()
        new_date = TODAY + timedelta(days=3)
        patch = self.machine.apply(lead, DateChange(follow_up_date=new_date, via_calendar=True), TODAY)
        self.assertEqual(patch, {"follow_up_date": new_date})

    def test_field_edit_trims_and_rejects_empty_name(self):
        lead = make_lead()
        self.assertEqual(
            self.machine.apply(lead, FieldEdit(name=" New Name ", link=""), TODAY),
            {"name": "New Name", "link": None},
        )
        with self.assertRaises(InvalidTransition):
            self.machine.apply(lead, FieldEdit(name="  "), TODAY)


class TestColdCheck(unittest.TestCase):
    def setUp(self):
        self.machine = LeadStateMachine()

    def test_check_in_appends_day(self):
        lead = make_lead(status=LeadStatus.COLD, cold_status=ColdStatus.UNREACHED, cold_start_date=TODAY)
        patch = self.machine.apply(lead, ColdCheck(), TODAY)
        self.assertEqual(patch["cold_check_history"], [TODAY])

    def test_second_check_same_day_rejected(self):
        lead = make_lead(status=LeadStatus.COLD, cold_status=ColdStatus.UNREACHED, cold_start_date=TODAY, cold_check_history=[TODAY])
        with self.assertRaises(DuplicateColdCheck) as ctx:
            self.machine.apply(lead, ColdCheck(), TODAY)
        self.assertEqual(str(ctx.exception), "Already performed a follow-up today.")

    def test_check_in_requires_cold(self):
        with self.assertRaises(InvalidTransition):
            self.machine.apply(make_lead(status=LeadStatus.WARM), ColdCheck(), TODAY)


class TestOptionsAndCreation(unittest.TestCase):
    def setUp(self):
        self.machine = LeadStateMachine()

    def test_options_for_cold_lead(self):
        lead = make_lead(status=LeadStatus.COLD, cold_status=ColdStatus.UNREACHED, cold_start_date=TODAY)
        options = self.machine.options(lead, TODAY)
        self.assertFalse(options.todo_editable)
        self.assertTrue(options.every_editable)
        self.assertTrue(options.cold_fields)
        self.assertTrue(options.can_check_in)

        checked = lead.model_copy(update={"cold_check_history": [TODAY]})
        self.assertFalse(self.machine.options(checked, TODAY).can_check_in)

    def test_options_for_hot_lead(self):
        options = self.machine.options(make_lead(status=LeadStatus.HOT), TODAY)
        self.assertEqual(options.todos, list(TodoStatus))
        self.assertFalse(options.every_editable)
        self.assertEqual(options.every_options, [])

    def test_initial_fields_for_cold_lead(self):
        fields = self.machine.initial_fields(NewLead(name="Beta", status=LeadStatus.COLD), TODAY)
        self.assertEqual(fields["cold_status"], ColdStatus.UNREACHED)
        self.assertEqual(fields["cold_start_date"], TODAY)
        self.assertEqual(fields["cold_check_history"], [])
        self.assertEqual(fields["follow_up_date"], TODAY)

    def test_initial_fields_reject_closed_and_stray_every(self):
        with self.assertRaises(InvalidTransition):
            self.machine.initial_fields(NewLead(name="Beta", status=LeadStatus.CLOSED), TODAY)
        with self.assertRaises(InvalidTransition):
            self.machine.initial_fields(NewLead(name="Beta", status=LeadStatus.HOT, every=EveryFreq.FIVE_DAYS), TODAY)

    def test_apply_all_sees_previous_steps(self):
        lead = make_lead(status=LeadStatus.HOT)
        patch = self.machine.apply_all(
            lead,
            [StatusChange(status=LeadStatus.PROGRESSIVE), EveryChange(every=EveryFreq.TEN_DAYS)],
            TODAY,
        )
        self.assertEqual(patch, {"status": LeadStatus.PROGRESSIVE, "every": "10"})


if __name__ == '__main__':
    unittest.main()

import unittest
from datetime import date, timedelta

import httpx

from helpers import make_context, settle

from leadtrack.main import app, init_state


class ApiTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.context = await make_context()
        await init_state(app, self.context)
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

        agent = await self.client.post("/api/session", json={"user_id": "agent-1", "email": "jane@example.com", "name": "Jane"})
        admin = await self.client.post("/api/session", json={"user_id": "admin-1", "email": "admin@example.com", "name": "Boss"})
        self.assertEqual(agent.json()["profile"]["role"], "agent")
        self.assertEqual(admin.json()["profile"]["role"], "admin")

    async def asyncTearDown(self):
        await self.client.aclose()
        await app.state.registry.aclose()
        await self.context.engine.dispose()

    def as_agent(self):
        return {"X-User-Id": "agent-1"}

    def as_admin(self):
        return {"X-User-Id": "admin-1"}

    async def settle(self, user_id="agent-1"):
        await settle(await app.state.registry.get(user_id))

    async def create_lead(self, **body):
        payload = {"name": "Acme Corp"}
        payload.update(body)
        response = await self.client.post("/api/leads", json=payload, headers=self.as_agent())
        self.assertEqual(response.status_code, 201)
        return response.json()


class TestBasics(ApiTestCase):

    async def test_health_and_setup(self):
        self.assertEqual((await self.client.get("/health")).json(), {"status": "healthy"})
        setup = (await self.client.get("/api/setup")).json()
        self.assertTrue(setup["schema_ready"])
        self.assertEqual(setup["missing_tables"], [])

    async def test_missing_user_header(self):
        response = await self.client.get("/api/leads")
        self.assertEqual(response.status_code, 401)

    async def test_unknown_user(self):
        response = await self.client.get("/api/leads", headers={"X-User-Id": "ghost"})
        self.assertEqual(response.status_code, 404)


class TestLeadEndpoints(ApiTestCase):

    async def test_create_and_list(self):
        lead = await self.create_lead(initial_note="Met at the expo")
        self.assertEqual(lead["assigned_agent_id"], "agent-1")
        self.assertEqual([n["text"] for n in lead["notes"]], ["Met at the expo"])

        hot = await self.client.get("/api/leads", params={"tab": "hot"}, headers=self.as_agent())
        self.assertEqual([l["id"] for l in hot.json()], [lead["id"]])

        counts = await self.client.get("/api/leads/counts", headers=self.as_agent())
        self.assertEqual(counts.json()["hot"], 1)

    async def test_status_intent(self):
        lead = await self.create_lead()
        response = await self.client.patch(
            f"/api/leads/{lead['id']}",
            json={"intent": {"kind": "status", "status": "warm"}},
            headers=self.as_agent(),
        )
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["status"], "warm")
        self.assertEqual(response.json()["todo"], "followup")
        await self.settle()

    async def test_close_requires_reason(self):
        lead = await self.create_lead()
        closed = await self.client.patch(
            f"/api/leads/{lead['id']}",
            json={"intent": {"kind": "status", "status": "closed"}},
            headers=self.as_agent(),
        )
        self.assertEqual(closed.status_code, 422)

        blank = await self.client.patch(
            f"/api/leads/{lead['id']}",
            json={"intent": {"kind": "close", "reason": "  "}},
            headers=self.as_agent(),
        )
        self.assertEqual(blank.status_code, 422)

        ok = await self.client.patch(
            f"/api/leads/{lead['id']}",
            json={"intent": {"kind": "close", "reason": "Bought elsewhere"}},
            headers=self.as_agent(),
        )
        self.assertEqual(ok.json()["close_reason"], "Bought elsewhere")
        await self.settle()

    async def test_duplicate_cold_check(self):
        lead = await self.create_lead(status="cold")
        first = await self.client.patch(f"/api/leads/{lead['id']}", json={"intent": {"kind": "cold_check"}}, headers=self.as_agent())
        self.assertEqual(first.status_code, 202)
        second = await self.client.patch(f"/api/leads/{lead['id']}", json={"intent": {"kind": "cold_check"}}, headers=self.as_agent())
        self.assertEqual(second.status_code, 422)
        self.assertEqual(second.json()["detail"], "Already performed a follow-up today.")
        await self.settle()

    async def test_details_cold_check_records_today_only(self):
        lead = await self.create_lead(status="cold")
        today = date.fromisoformat(lead["follow_up_date"])
        future = [{"kind": "cold_check", "day": (today + timedelta(days=n)).isoformat()} for n in range(1, 5)]

        batch = await self.client.post(f"/api/leads/{lead['id']}/details", json={"intents": future}, headers=self.as_agent())
        self.assertEqual(batch.status_code, 422)
        self.assertEqual(batch.json()["detail"], "Already performed a follow-up today.")

        single = await self.client.post(f"/api/leads/{lead['id']}/details", json={"intents": future[:1]}, headers=self.as_agent())
        self.assertEqual(single.status_code, 202)
        self.assertEqual(single.json()["cold_check_history"], [today.isoformat()])
        await self.settle()

        stored = (await self.client.get(f"/api/leads/{lead['id']}", headers=self.as_agent())).json()
        self.assertEqual(stored["cold_check_history"], [today.isoformat()])

    async def test_unknown_lead(self):
        response = await self.client.patch("/api/leads/missing", json={"intent": {"kind": "todo", "todo": "sale"}}, headers=self.as_agent())
        self.assertEqual(response.status_code, 404)

    async def test_details_and_notes(self):
        lead = await self.create_lead()
        details = await self.client.post(
            f"/api/leads/{lead['id']}/details",
            json={"intents": [{"kind": "todo", "todo": "callback"}], "note": "Call back Monday"},
            headers=self.as_agent(),
        )
        self.assertEqual(details.status_code, 202)
        self.assertEqual(details.json()["todo"], "callback")
        await self.settle()

        note = await self.client.post(f"/api/leads/{lead['id']}/notes", json={"text": "Left voicemail"}, headers=self.as_agent())
        self.assertEqual(note.status_code, 202)
        await self.settle()

        stored = (await self.client.get(f"/api/leads/{lead['id']}", headers=self.as_agent())).json()
        self.assertEqual([n["text"] for n in stored["notes"]], ["Call back Monday", "Left voicemail"])

    async def test_transitions_and_calendar(self):
        lead = await self.create_lead(status="cold")
        options = (await self.client.get(f"/api/leads/{lead['id']}/transitions", headers=self.as_agent())).json()
        self.assertFalse(options["todo_editable"])
        self.assertTrue(options["can_check_in"])

        day = date.fromisoformat(lead["follow_up_date"])
        calendar = await self.client.get(f"/api/calendar/{day.year}/{day.month}", headers=self.as_agent())
        self.assertEqual(calendar.status_code, 200)
        cells = [cell for week in calendar.json()["weeks"] for cell in week if cell]
        self.assertEqual(sum(len(cell["leads"]) for cell in cells), 1)

        bad = await self.client.get("/api/calendar/2026/13", headers=self.as_agent())
        self.assertEqual(bad.status_code, 400)


class TestAdminEndpoints(ApiTestCase):

    async def test_accountability_is_admin_only(self):
        await self.create_lead(follow_up_date="2020-01-01")
        self.assertEqual((await self.client.get("/api/accountability", headers=self.as_agent())).status_code, 403)

        await (await app.state.registry.get("admin-1")).refresh()
        report = (await self.client.get("/api/accountability", headers=self.as_admin())).json()
        self.assertEqual(report["overdue_count"], 1)
        self.assertEqual(report["ignored_count"], 1)
        self.assertEqual([a["agent"]["id"] for a in report["agents"]], ["agent-1"])

    async def test_refresh_shows_leads_written_by_agents(self):
        # Both workspaces were cached when the session was opened
        self.assertEqual((await self.client.get("/api/leads", headers=self.as_admin())).json(), [])
        lead = await self.create_lead()
        self.assertEqual((await self.client.get("/api/leads", headers=self.as_admin())).json(), [])

        refreshed = await self.client.post("/api/refresh", headers=self.as_admin())
        self.assertEqual(refreshed.status_code, 200)
        self.assertEqual(refreshed.json(), {"mode": "ready", "sync_failed": False})

        leads = await self.client.get("/api/leads", headers=self.as_admin())
        self.assertEqual([l["id"] for l in leads.json()], [lead["id"]])

    async def test_deletion_flow(self):
        lead = await self.create_lead()
        requested = await self.client.post(f"/api/leads/{lead['id']}/deletion-request", headers=self.as_agent())
        self.assertEqual(requested.json()["deletion_request"]["status"], "pending")
        await self.settle()

        await (await app.state.registry.get("admin-1")).refresh()
        forbidden = await self.client.post(
            f"/api/leads/{lead['id']}/deletion-request/resolve", json={"approve": True}, headers=self.as_agent()
        )
        self.assertEqual(forbidden.status_code, 403)

        approved = await self.client.post(
            f"/api/leads/{lead['id']}/deletion-request/resolve", json={"approve": True}, headers=self.as_admin()
        )
        self.assertEqual(approved.status_code, 202)
        await self.settle("admin-1")

        logs = await self.client.get("/api/activity-logs", params={"action": "rule_violation"}, headers=self.as_admin())
        self.assertEqual([l["details"] for l in logs.json()], ["Requested deletion for lead"])

    async def test_payout_flow(self):
        rejected = await self.client.post("/api/payouts", json={"points": 10}, headers=self.as_agent())
        self.assertEqual(rejected.status_code, 409)

        award = await self.client.post(
            "/api/points", json={"agent_id": "agent-1", "amount": 30, "reason": "Top closer"}, headers=self.as_admin()
        )
        self.assertEqual(award.status_code, 201)

        request = await self.client.post("/api/payouts", json={"points": 20}, headers=self.as_agent())
        self.assertEqual(request.status_code, 201)
        self.assertEqual(request.json()["dollar_value"], "2.00")

        processed = await self.client.post(
            f"/api/payouts/{request.json()['id']}/process", json={"action": "approved"}, headers=self.as_admin()
        )
        self.assertEqual(processed.json()["status"], "approved")

        history = await self.client.get("/api/points/agent-1", headers=self.as_agent())
        self.assertEqual(sorted(h["amount"] for h in history.json()), [-20, 30])
        self.assertEqual((await self.client.get("/api/points/admin-1", headers=self.as_agent())).status_code, 403)

    async def test_targets(self):
        body = {"agent_id": "agent-1", "agent_name": "Jane", "month": "2026-10-01", "sales_target": 12}
        self.assertEqual((await self.client.put("/api/targets", json=body, headers=self.as_agent())).status_code, 403)
        self.assertEqual((await self.client.put("/api/targets", json=body, headers=self.as_admin())).status_code, 200)

        mine = await self.client.get("/api/targets/2026-10-01", headers=self.as_agent())
        self.assertEqual([t["sales_target"] for t in mine.json()], [12])

    async def test_tasks(self):
        created = await self.client.post("/api/tasks", json={"text": "Send brochure"}, headers=self.as_agent())
        self.assertEqual(created.status_code, 201)
        self.assertEqual((await self.client.post("/api/tasks", json={"text": " "}, headers=self.as_agent())).status_code, 422)

        await self.client.post(f"/api/tasks/{created.json()['id']}/complete", headers=self.as_agent())
        self.assertEqual((await self.client.get("/api/tasks", headers=self.as_agent())).json(), [])


if __name__ == '__main__':
    unittest.main()

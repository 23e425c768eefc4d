import unittest
from datetime import datetime, timezone

from services import crm_lifecycle as lifecycle
from services.crm_lifecycle import EntityNotFound, PermissionDenied, ValidationFailed
from services.crm_rbac import CRMActor
from services.crm_store import get_entity, list_all_entities, list_audit_events, reset_memory_store_for_tests

ADMIN = CRMActor(tenant_id="1", email="founder@example.com", role="admin", user_id="1")
MANAGER = CRMActor(tenant_id="1", email="cto@example.com", role="manager", user_id="2")
MEMBER = CRMActor(tenant_id="1", email="dev@example.com", role="member", user_id="3")
OTHER_TENANT = CRMActor(tenant_id="2", email="founder@other.example", role="admin", user_id="9")


def _parse(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ContactLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_new_contact_defaults_to_prospect_with_seeded_timeline(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John Smith", "email": " John@TechStart.example "})
        self.assertEqual(contact["status"], "Prospect")
        self.assertEqual(contact["email"], "john@techstart.example")
        self.assertEqual(contact["ownerEmail"], ADMIN.email)
        self.assertEqual(len(contact["statusTimeline"]), 1)
        entry = contact["statusTimeline"][0]
        self.assertIsNone(entry["from"])
        self.assertEqual(entry["to"], "Prospect")
        self.assertEqual(entry["byEmail"], ADMIN.email)

    def test_contact_name_is_required(self):
        with self.assertRaises(ValidationFailed):
            lifecycle.create_contact(ADMIN, {"name": "   "})

    def test_invalid_status_is_rejected(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        with self.assertRaises(ValidationFailed):
            lifecycle.change_contact_status(ADMIN, contact["id"], "Maybe")

    def test_status_change_appends_timeline_only_on_real_change(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        moved = lifecycle.change_contact_status(ADMIN, contact["id"], "negotiation")
        self.assertEqual(moved["status"], "Negotiation")
        self.assertEqual([(e["from"], e["to"]) for e in moved["statusTimeline"]], [(None, "Prospect"), ("Prospect", "Negotiation")])

        same = lifecycle.change_contact_status(ADMIN, contact["id"], "Negotiation")
        self.assertEqual(len(same["statusTimeline"]), 2)

    def test_won_contact_creates_deal(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "Lisa Wang", "companyName": "Digital Solutions"})
        lifecycle.change_contact_status(ADMIN, contact["id"], "Won")

        deals = lifecycle.list_deals(ADMIN)
        self.assertEqual(len(deals), 1)
        deal = deals[0]
        self.assertEqual(deal["dealName"], "Deal for Digital Solutions")
        self.assertEqual(deal["stage"], "Lead")
        self.assertEqual(deal["value"], 0.0)
        self.assertEqual(deal["origin"], "contact_won")
        self.assertEqual(deal["contactId"], contact["id"])
        self.assertEqual(deal["companyName"], "Digital Solutions")
        self.assertEqual((_parse(deal["endDate"]) - _parse(deal["startDate"])).days, 30)

    def test_auto_deal_name_falls_back_to_contact_name(self):
        lifecycle.create_contact(ADMIN, {"name": "Solo Buyer", "status": "Won"})
        deals = lifecycle.list_deals(ADMIN)
        self.assertEqual([deal["dealName"] for deal in deals], ["Deal for Solo Buyer"])

    def test_reentering_won_does_not_duplicate_deal(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John", "companyName": "TechStart"})
        lifecycle.change_contact_status(ADMIN, contact["id"], "Won")
        lifecycle.change_contact_status(ADMIN, contact["id"], "Lost")
        final = lifecycle.change_contact_status(ADMIN, contact["id"], "Won")

        self.assertEqual(len(lifecycle.list_deals(ADMIN, show_lost=True)), 1)
        self.assertEqual([e["to"] for e in final["statusTimeline"]], ["Prospect", "Won", "Lost", "Won"])

    def test_member_win_still_creates_deal(self):
        contact = lifecycle.create_contact(MEMBER, {"name": "Michael Chen"})
        lifecycle.change_contact_status(MEMBER, contact["id"], "Won")
        self.assertEqual(len(lifecycle.list_deals(ADMIN)), 1)
        with self.assertRaises(PermissionDenied):
            lifecycle.list_deals(MEMBER)

    def test_member_cannot_rename_contact(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        with self.assertRaises(PermissionDenied):
            lifecycle.update_contact(MEMBER, contact["id"], {"name": "Johnny"})
        updated = lifecycle.update_contact(MEMBER, contact["id"], {"notes": "Call back Monday"})
        self.assertEqual(updated["notes"], "Call back Monday")

    def test_lost_contacts_hidden_unless_requested(self):
        keep = lifecycle.create_contact(ADMIN, {"name": "Keep"})
        lost = lifecycle.create_contact(ADMIN, {"name": "Gone", "status": "Lost"})
        default_ids = {item["id"] for item in lifecycle.list_contacts(ADMIN)}
        all_ids = {item["id"] for item in lifecycle.list_contacts(ADMIN, show_lost=True)}
        self.assertEqual(default_ids, {keep["id"]})
        self.assertEqual(all_ids, {keep["id"], lost["id"]})
        self.assertIsNotNone(get_entity("contacts", ADMIN.tenant_id, lost["id"]))

    def test_contacts_are_tenant_scoped(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        with self.assertRaises(EntityNotFound):
            lifecycle.get_contact(OTHER_TENANT, contact["id"])
        self.assertEqual(lifecycle.list_contacts(OTHER_TENANT), [])

    def test_contact_mutations_are_audited(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        lifecycle.change_contact_status(ADMIN, contact["id"], "Negotiation")
        events, _ = list_audit_events(ADMIN.tenant_id, entity_type="contact", entity_id=contact["id"])
        self.assertEqual(sorted(event["action"] for event in events), ["contact_created", "contact_updated"])

    def test_rename_carries_to_led_projects_and_deals(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "Lisa Wang", "companyName": "Digital", "status": "Won"})
        deal = lifecycle.list_deals(ADMIN)[0]
        lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Won"})

        lifecycle.update_contact(ADMIN, contact["id"], {"name": "Lisa Chen", "companyName": "Digital Labs"})

        project = lifecycle.list_projects(ADMIN, lead_id=contact["id"])[0]
        self.assertEqual(project["leadName"], "Lisa Chen")
        self.assertEqual(lifecycle.get_deal(ADMIN, deal["id"])["companyName"], "Digital Labs")

    def test_contact_overview_lists_related_deals_and_projects(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John", "status": "Won"})
        deal = lifecycle.list_deals(ADMIN)[0]
        lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Won"})
        overview = lifecycle.get_contact_overview(ADMIN, contact["id"])
        self.assertEqual(len(overview["deals"]), 1)
        self.assertEqual(len(overview["projects"]), 1)


class DealLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.contact = lifecycle.create_contact(ADMIN, {"name": "Sarah Johnson", "companyName": "Innovation Labs"})

    def test_create_deal_fills_company_and_window(self):
        deal = lifecycle.create_deal(ADMIN, {"dealName": "Mobile App", "contactId": self.contact["id"], "value": "45000"})
        self.assertEqual(deal["companyName"], "Innovation Labs")
        self.assertEqual(deal["stage"], "Lead")
        self.assertEqual(deal["value"], 45000.0)
        self.assertEqual(deal["currency"], "USD")
        self.assertEqual(deal["origin"], "manual")
        self.assertNotIn("closedAt", deal)
        self.assertEqual((_parse(deal["endDate"]) - _parse(deal["startDate"])).days, 30)

    def test_create_deal_requires_existing_contact(self):
        with self.assertRaises(ValidationFailed) as ctx:
            lifecycle.create_deal(ADMIN, {"dealName": "Ghost", "contactId": "missing"})
        self.assertEqual(ctx.exception.code, "invalid_reference")
        with self.assertRaises(ValidationFailed):
            lifecycle.create_deal(ADMIN, {"contactId": self.contact["id"]})

    def test_negative_value_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            lifecycle.create_deal(ADMIN, {"dealName": "X", "contactId": self.contact["id"], "value": -5})

    def test_manager_cannot_create_deal(self):
        with self.assertRaises(PermissionDenied):
            lifecycle.create_deal(MANAGER, {"dealName": "X", "contactId": self.contact["id"]})

    def test_won_deal_creates_single_project(self):
        deal = lifecycle.create_deal(ADMIN, {"dealName": "AI Platform", "contactId": self.contact["id"]})
        won = lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Won"})
        self.assertIn("closedAt", won)

        projects = lifecycle.list_projects(ADMIN)
        self.assertEqual(len(projects), 1)
        project = projects[0]
        self.assertEqual(project["title"], "Project: AI Platform")
        self.assertEqual(project["status"], "Active")
        self.assertEqual(project["dealId"], deal["id"])
        self.assertEqual(project["leadId"], self.contact["id"])
        self.assertEqual(project["leadName"], "Sarah Johnson")
        self.assertEqual(project["origin"], "deal_won")

        lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Negotiation"})
        lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Won"})
        self.assertEqual(len(lifecycle.list_projects(ADMIN)), 1)

    def test_reopening_deal_clears_closed_at(self):
        deal = lifecycle.create_deal(ADMIN, {"dealName": "X", "contactId": self.contact["id"], "stage": "Lost"})
        self.assertIn("closedAt", deal)
        reopened = lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Negotiation"})
        self.assertNotIn("closedAt", reopened)

    def test_deal_created_as_won_gets_project(self):
        lifecycle.create_deal(ADMIN, {"dealName": "Signed", "contactId": self.contact["id"], "stage": "Won"})
        self.assertEqual([p["title"] for p in lifecycle.list_projects(ADMIN)], ["Project: Signed"])

    def test_lost_deals_hidden_unless_requested(self):
        lifecycle.create_deal(ADMIN, {"dealName": "Open", "contactId": self.contact["id"]})
        lifecycle.create_deal(ADMIN, {"dealName": "Closed", "contactId": self.contact["id"], "stage": "Lost"})
        self.assertEqual([d["dealName"] for d in lifecycle.list_deals(ADMIN)], ["Open"])
        self.assertEqual(len(lifecycle.list_deals(ADMIN, show_lost=True)), 2)

    def test_end_before_start_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            lifecycle.create_deal(
                ADMIN,
                {
                    "dealName": "X",
                    "contactId": self.contact["id"],
                    "startDate": "2026-03-01T00:00:00Z",
                    "endDate": "2026-02-01T00:00:00Z",
                },
            )


class CascadeDeleteTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def _won_pipeline(self, name):
        contact = lifecycle.create_contact(ADMIN, {"name": name, "status": "Won"})
        deal = lifecycle.list_deals(ADMIN)
        deal = [d for d in deal if d["contactId"] == contact["id"]][0]
        lifecycle.update_deal(ADMIN, deal["id"], {"stage": "Won"})
        project = lifecycle.list_projects(ADMIN, lead_id=contact["id"])[0]
        deal_task = lifecycle.create_task(
            ADMIN,
            {"title": "Invoice", "priority": "High", "assignedToEmail": MEMBER.email, "dealId": deal["id"]},
        )
        project_task = lifecycle.create_task(
            ADMIN,
            {"title": "Kick-off", "priority": "Low", "assignedToEmail": MEMBER.email, "projectId": project["id"]},
        )
        return contact, deal, project, deal_task, project_task

    def test_deleting_contact_removes_whole_tree(self):
        contact, deal, project, deal_task, project_task = self._won_pipeline("John")
        other = self._won_pipeline("Lisa")

        summary = lifecycle.delete_contact(ADMIN, contact["id"])
        self.assertEqual(summary["contacts"], 1)
        self.assertEqual(summary["deals"], 1)
        self.assertEqual(summary["projects"], 1)
        self.assertEqual(summary["tasks"], 2)

        self.assertIsNone(get_entity("deals", ADMIN.tenant_id, deal["id"]))
        self.assertIsNone(get_entity("projects", ADMIN.tenant_id, project["id"]))
        self.assertIsNone(get_entity("tasks", ADMIN.tenant_id, deal_task["id"]))
        self.assertIsNone(get_entity("tasks", ADMIN.tenant_id, project_task["id"]))
        for entity, table in zip(other, ("contacts", "deals", "projects", "tasks", "tasks")):
            self.assertIsNotNone(get_entity(table, ADMIN.tenant_id, entity["id"]))

    def test_deleting_deal_removes_projects_and_tasks(self):
        contact, deal, project, deal_task, project_task = self._won_pipeline("John")
        summary = lifecycle.delete_deal(ADMIN, deal["id"])
        self.assertEqual(summary, {"deals": 1, "projects": 1, "tasks": 2})
        self.assertIsNotNone(get_entity("contacts", ADMIN.tenant_id, contact["id"]))
        self.assertEqual(list_all_entities("tasks", ADMIN.tenant_id), [])

    def test_deleting_project_unlinks_tasks(self):
        _, deal, project, deal_task, project_task = self._won_pipeline("John")
        summary = lifecycle.delete_project(ADMIN, project["id"])
        self.assertEqual(summary, {"projects": 1, "tasksUnlinked": 1})
        remaining = get_entity("tasks", ADMIN.tenant_id, project_task["id"])
        self.assertIsNotNone(remaining)
        self.assertNotIn("projectId", remaining)
        self.assertIsNotNone(get_entity("deals", ADMIN.tenant_id, deal["id"]))

    def test_deleting_contact_clears_lead_on_other_deals_projects(self):
        contact, *_ = self._won_pipeline("John")
        _, lisa_deal, lisa_project, _, _ = self._won_pipeline("Lisa")
        lifecycle.update_project_lead(ADMIN, lisa_project["id"], contact["id"])

        summary = lifecycle.delete_contact(ADMIN, contact["id"])
        self.assertEqual(summary["projects"], 1)

        survivor = get_entity("projects", ADMIN.tenant_id, lisa_project["id"])
        self.assertIsNotNone(survivor)
        self.assertEqual(survivor["dealId"], lisa_deal["id"])
        self.assertNotIn("leadId", survivor)
        self.assertNotIn("leadName", survivor)

    def test_member_cannot_delete(self):
        contact = lifecycle.create_contact(ADMIN, {"name": "John"})
        with self.assertRaises(PermissionDenied):
            lifecycle.delete_contact(MEMBER, contact["id"])

    def test_deleting_missing_contact_raises_not_found(self):
        with self.assertRaises(EntityNotFound):
            lifecycle.delete_contact(ADMIN, "missing")


class ProjectLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.lead = lifecycle.create_contact(ADMIN, {"name": "Robert Davis", "companyName": "Finance Forward"})
        self.other_lead = lifecycle.create_contact(ADMIN, {"name": "Lisa Wang"})

    def test_create_project_fills_lead_and_defaults(self):
        project = lifecycle.create_project(MANAGER, {"title": "Portal", "leadId": self.lead["id"]})
        self.assertEqual(project["status"], "Active")
        self.assertEqual(project["leadName"], "Robert Davis")
        self.assertEqual(project["companyName"], "Finance Forward")
        self.assertEqual(project["assignedTeam"], [MANAGER.email])

    def test_member_cannot_create_project(self):
        with self.assertRaises(PermissionDenied):
            lifecycle.create_project(MEMBER, {"title": "Portal"})

    def test_update_lead_and_owner(self):
        project = lifecycle.create_project(ADMIN, {"title": "Portal", "leadId": self.lead["id"]})
        moved = lifecycle.update_project_lead(ADMIN, project["id"], self.other_lead["id"])
        self.assertEqual(moved["leadId"], self.other_lead["id"])
        self.assertEqual(moved["leadName"], "Lisa Wang")

        owned = lifecycle.update_project_owner(ADMIN, project["id"], "Dev@Example.com")
        self.assertEqual(owned["ownerEmail"], "dev@example.com")
        self.assertIn("dev@example.com", owned["assignedTeam"])
        self.assertEqual([p["id"] for p in lifecycle.list_projects(MEMBER)], [project["id"]])

    def test_update_lead_rejects_unknown_contact(self):
        project = lifecycle.create_project(ADMIN, {"title": "Portal"})
        with self.assertRaises(ValidationFailed):
            lifecycle.update_project_lead(ADMIN, project["id"], "missing")

    def test_list_projects_by_lead(self):
        mine = lifecycle.create_project(ADMIN, {"title": "A", "leadId": self.lead["id"]})
        lifecycle.create_project(ADMIN, {"title": "B", "leadId": self.other_lead["id"]})
        self.assertEqual([p["id"] for p in lifecycle.list_projects_by_lead(ADMIN, self.lead["id"])], [mine["id"]])

    def test_member_only_sees_staffed_projects(self):
        lifecycle.create_project(ADMIN, {"title": "Hidden"})
        visible = lifecycle.create_project(ADMIN, {"title": "Staffed", "assignedTeam": [MEMBER.email]})
        self.assertEqual([p["id"] for p in lifecycle.list_projects(MEMBER)], [visible["id"]])

    def test_invalid_status_is_rejected(self):
        project = lifecycle.create_project(ADMIN, {"title": "Portal"})
        with self.assertRaises(ValidationFailed):
            lifecycle.update_project(ADMIN, project["id"], {"status": "Cancelled"})
        paused = lifecycle.update_project(ADMIN, project["id"], {"status": "paused"})
        self.assertEqual(paused["status"], "Paused")


class TaskLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def _task(self, actor=ADMIN, **overrides):
        payload = {"title": "Prepare deck", "priority": "High", "assignedToEmail": MEMBER.email}
        payload.update(overrides)
        return lifecycle.create_task(actor, payload)

    def test_task_starts_pending(self):
        task = self._task(status="Completed")
        self.assertEqual(task["status"], "Pending")
        self.assertEqual(task["createdByEmail"], ADMIN.email)

    def test_required_fields(self):
        with self.assertRaises(ValidationFailed):
            lifecycle.create_task(ADMIN, {"title": "X", "assignedToEmail": MEMBER.email})
        with self.assertRaises(ValidationFailed):
            lifecycle.create_task(ADMIN, {"title": "X", "priority": "Low"})
        with self.assertRaises(ValidationFailed):
            lifecycle.create_task(ADMIN, {"priority": "Low", "assignedToEmail": MEMBER.email})
        with self.assertRaises(ValidationFailed):
            self._task(priority="Urgent")

    def test_links_must_exist(self):
        with self.assertRaises(ValidationFailed):
            self._task(dealId="missing")
        with self.assertRaises(ValidationFailed):
            self._task(projectId="missing")

    def test_overdue_is_derived_not_stored(self):
        task = self._task(dueDate="2020-01-01T00:00:00Z")
        listed = lifecycle.list_tasks(ADMIN)
        self.assertEqual(listed[0]["status"], "Overdue")
        self.assertEqual(get_entity("tasks", ADMIN.tenant_id, task["id"])["status"], "Pending")

        fresh = self._task(dueDate="2030-01-01T00:00:00Z")
        early = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(lifecycle.get_task(ADMIN, fresh["id"], now=early)["status"], "Pending")

    def test_date_only_due_date_runs_to_end_of_day(self):
        task = self._task(dueDate="2026-10-19")
        self.assertEqual(task["dueDate"], "2026-10-19")
        noon = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        late = datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc)
        next_day = datetime(2026, 10, 20, 0, 1, tzinfo=timezone.utc)
        self.assertEqual(lifecycle.get_task(ADMIN, task["id"], now=noon)["status"], "Pending")
        self.assertEqual(lifecycle.get_task(ADMIN, task["id"], now=late)["status"], "Pending")
        self.assertEqual(lifecycle.get_task(ADMIN, task["id"], now=next_day)["status"], "Overdue")

    def test_completed_task_is_never_overdue(self):
        task = self._task(dueDate="2020-01-01T00:00:00Z")
        done = lifecycle.update_task_status(ADMIN, task["id"], "Completed")
        self.assertEqual(done["status"], "Completed")
        self.assertIn("completedAt", done)
        reopened = lifecycle.update_task_status(ADMIN, task["id"], "In Progress")
        self.assertNotIn("completedAt", reopened)

    def test_member_updates_status_only(self):
        task = self._task()
        updated = lifecycle.update_task_status(MEMBER, task["id"], "in_progress")
        self.assertEqual(updated["status"], "In Progress")
        with self.assertRaises(PermissionDenied):
            lifecycle.update_task(MEMBER, task["id"], {"title": "Renamed"})

    def test_member_sees_only_own_tasks(self):
        mine = self._task()
        self._task(assignedToEmail="someone@example.com")
        self.assertEqual([t["id"] for t in lifecycle.list_tasks(MEMBER)], [mine["id"]])
        created = self._task(actor=MEMBER, assignedToEmail="someone@example.com")
        self.assertIn(created["id"], {t["id"] for t in lifecycle.list_tasks(MEMBER)})

    def test_member_cannot_delete_task(self):
        task = self._task()
        with self.assertRaises(PermissionDenied):
            lifecycle.delete_task(MEMBER, task["id"])
        self.assertEqual(lifecycle.delete_task(MANAGER, task["id"]), {"tasks": 1})


if __name__ == "__main__":
    unittest.main()

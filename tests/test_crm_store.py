import unittest

from services.crm_store import (
    create_entity,
    delete_entity,
    get_entity,
    list_all_entities,
    list_audit_events,
    list_entities,
    reset_memory_store_for_tests,
    upsert_entity,
    using_memory_store,
    write_audit_event,
)


class CrmTenantIsolationTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_store_runs_in_memory_without_connection_string(self):
        self.assertTrue(using_memory_store())

    def test_partition_isolation_for_contacts(self):
        contact_a = create_entity("contacts", "tenant-a", {"name": "A contact", "status": "Prospect"})
        contact_b = create_entity("contacts", "tenant-b", {"name": "B contact", "status": "Prospect"})

        list_a, _ = list_entities("contacts", "tenant-a", limit=20)
        list_b, _ = list_entities("contacts", "tenant-b", limit=20)

        ids_a = {item["id"] for item in list_a}
        ids_b = {item["id"] for item in list_b}
        self.assertIn(contact_a["id"], ids_a)
        self.assertNotIn(contact_b["id"], ids_a)
        self.assertIn(contact_b["id"], ids_b)
        self.assertNotIn(contact_a["id"], ids_b)

    def test_get_and_delete_are_tenant_scoped(self):
        deal = create_entity("deals", "tenant-a", {"dealName": "Rollout"})
        self.assertIsNone(get_entity("deals", "tenant-b", deal["id"]))
        self.assertFalse(delete_entity("deals", "tenant-b", deal["id"]))
        self.assertIsNotNone(get_entity("deals", "tenant-a", deal["id"]))

    def test_create_requires_tenant(self):
        with self.assertRaises(ValueError):
            create_entity("contacts", "  ", {"name": "Nobody"})


class CrmStoreDocumentTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_list_and_dict_fields_survive_storage(self):
        created = create_entity(
            "projects",
            "tenant-a",
            {"title": "Portal", "assignedTeam": ["dev1@example.com"], "milestones": [{"name": "Beta"}]},
        )
        loaded = get_entity("projects", "tenant-a", created["id"])
        self.assertEqual(loaded["assignedTeam"], ["dev1@example.com"])
        self.assertEqual(loaded["milestones"], [{"name": "Beta"}])
        self.assertIn("createdAt", loaded)
        self.assertIn("updatedAt", loaded)

    def test_upsert_merges_and_none_clears_field(self):
        task = create_entity("tasks", "tenant-a", {"title": "Call", "projectId": "p1", "status": "Pending"})
        updated = upsert_entity("tasks", "tenant-a", task["id"], {"status": "In Progress", "projectId": None})
        self.assertEqual(updated["title"], "Call")
        self.assertEqual(updated["status"], "In Progress")
        self.assertNotIn("projectId", updated)
        self.assertEqual(updated["createdAt"], task["createdAt"])

    def test_delete_reports_missing_rows(self):
        task = create_entity("tasks", "tenant-a", {"title": "Call"})
        self.assertTrue(delete_entity("tasks", "tenant-a", task["id"]))
        self.assertFalse(delete_entity("tasks", "tenant-a", task["id"]))

    def test_cursor_paging_visits_every_row_once(self):
        created = {create_entity("tasks", "tenant-a", {"title": f"Task {i}"})["id"] for i in range(5)}
        seen = []
        cursor = None
        while True:
            page, cursor = list_entities("tasks", "tenant-a", limit=2, cursor=cursor)
            seen.extend(item["id"] for item in page)
            if not cursor:
                break
        self.assertEqual(len(seen), 5)
        self.assertEqual(set(seen), created)

    def test_descending_listing_is_newest_first(self):
        for i in range(25):
            create_entity("contacts", "tenant-a", {"name": f"C{i}"})
        rows = list_all_entities("contacts", "tenant-a", descending=True)
        self.assertEqual([row["name"] for row in rows], [f"C{i}" for i in reversed(range(25))])

        page, cursor = list_entities("contacts", "tenant-a", limit=10)
        self.assertEqual([row["name"] for row in page], [f"C{i}" for i in range(10)])
        self.assertIsNotNone(cursor)

    def test_list_all_applies_filter(self):
        create_entity("deals", "tenant-a", {"dealName": "Open", "stage": "Lead"})
        create_entity("deals", "tenant-a", {"dealName": "Gone", "stage": "Lost"})
        rows = list_all_entities("deals", "tenant-a", filter_fn=lambda item: item.get("stage") != "Lost")
        self.assertEqual([row["dealName"] for row in rows], ["Open"])

    def test_audit_events_filter_by_entity(self):
        for entity_id in ("c1", "c2"):
            write_audit_event(
                "tenant-a",
                actor_email="owner@example.com",
                actor_user_id="1",
                actor_role="admin",
                entity_type="contact",
                entity_id=entity_id,
                action="contact_created",
                after={"id": entity_id},
            )
        items, _ = list_audit_events("tenant-a", entity_type="contact", entity_id="c2")
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["entityId"], "c2")
        self.assertEqual(items[0]["after"], {"id": "c2"})
        self.assertEqual(list_audit_events("tenant-b")[0], [])


if __name__ == "__main__":
    unittest.main()

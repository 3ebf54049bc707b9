"""
Tests for the record index, search and content retrieval.
"""

import unittest
from datetime import datetime

from healthledger.access import AccessControlEngine
from healthledger.activity import ActivityLog
from healthledger.database import AccessLog, RecordIndexEntry
from healthledger.errors import ContentStoreUnavailable, Forbidden, NotFound, PayloadRejected
from healthledger.records import RecordIndex, build_searchable_text
from healthledger.sync import SyncEngine
from tests.helpers import FakeContentStore, FakeLedger, count, memory_cache, wallet


class TestSearchableText(unittest.TestCase):
    def test_same_metadata_same_projection(self):
        a = build_searchable_text("lab_report", {"title": "Lipid  Panel", "tags": ["Fasting", "Q3"]})
        b = build_searchable_text("lab_report", {"tags": ["Fasting", "Q3"], "title": "Lipid  Panel"})
        self.assertEqual(a, b)
        self.assertEqual(a, "lab_report tags fasting q3 title lipid panel")

    def test_empty_metadata(self):
        self.assertEqual(build_searchable_text("general", None), "general")


class RecordsTestCase(unittest.TestCase):
    def setUp(self):
        self.cache = memory_cache()
        self.ledger = FakeLedger()
        self.store = FakeContentStore({"bafyrec1": b"encrypted-lipid-panel", "bafyrec2": b"encrypted-xray"})
        self.activity = ActivityLog(self.cache)
        self.access = AccessControlEngine(self.cache, self.activity)
        self.records = RecordIndex(self.cache, self.access, self.activity, self.store)
        self.sync = SyncEngine(self.ledger, self.cache, self.records, self.activity)

        self.ledger.add_patient(101, "Asha Rao", "Patient 1")
        self.ledger.add_patient(102, "Karan Shah", "Patient 2")
        self.ledger.add_doctor(7, "Meera Iyer", "Doctor 1")
        self.ledger.add_diagnostic(3, "North Labs", "Diagnostic 1")
        for role, numeric_id in (("patient", 101), ("patient", 102), ("doctor", 7), ("diagnostic", 3)):
            self.sync.reconcile_profile(role, numeric_id)

        self.records.index("rec-1", wallet("Patient 1"), "bafyrec1", creator_wallet=wallet("Diagnostic 1"),
                           record_type="lab_report", metadata={"title": "Lipid Panel", "lab": "North Labs"})
        self.records.index("rec-2", wallet("Patient 2"), "bafyrec2", record_type="imaging",
                           metadata={"title": "Chest X-Ray", "lab": "North Labs"})


class TestIndex(RecordsTestCase):
    def test_1_index_is_idempotent(self):
        again = self.records.index("rec-1", wallet("Patient 2"), "bafyother", metadata={"title": "changed"})

        self.assertEqual(again.content_id, "bafyrec1")
        self.assertEqual(again.patient_wallet, wallet("Patient 1").lower())
        self.assertEqual(count(self.cache, RecordIndexEntry), 2)

    def test_2_creator_defaults_to_patient(self):
        entry = self.records.get("rec-2")
        self.assertEqual(entry.creator_wallet, wallet("Patient 2").lower())

    def test_3_get_missing(self):
        with self.assertRaises(NotFound):
            self.records.get("rec-404")
        self.assertIsNone(self.records.find("rec-404"))

    def test_4_list_by_patient(self):
        entries = self.records.list_by_patient(wallet("Patient 1"))
        self.assertEqual([e.record_id for e in entries], ["rec-1"])

    def test_7_list_by_patient_filters_creator_before_limit(self):
        for day in (2, 3, 4):
            self.records.index(f"rec-p{day}", wallet("Patient 1"), f"bafyp{day}",
                               created_at=datetime(2030, 1, day))

        newest = self.records.list_by_patient(wallet("Patient 1"), limit=2)
        created = self.records.list_by_patient(wallet("Patient 1"), limit=2, creator_wallet=wallet("Diagnostic 1"))

        self.assertEqual([e.record_id for e in newest], ["rec-p4", "rec-p3"])
        self.assertEqual([e.record_id for e in created], ["rec-1"])

    def test_5_refresh_projection(self):
        entry = self.records.refresh_projection("rec-1")
        self.assertEqual(entry.searchable_text, build_searchable_text("lab_report", entry.record_metadata))

    def test_6_serialize_exposes_metadata(self):
        data = RecordIndex.serialize(self.records.get("rec-1"))
        self.assertEqual(data["metadata"]["title"], "Lipid Panel")
        self.assertNotIn("record_metadata", data)


class TestSearch(RecordsTestCase):
    def test_1_unscoped_search_matches_all_tokens(self):
        results = self.records.search("north lipid")
        self.assertEqual([r.record_id for r in results], ["rec-1"])
        self.assertEqual(len(self.records.search("NORTH labs")), 2)

    def test_2_patient_scope(self):
        results = self.records.search("north", scope_wallet=wallet("Patient 2"), scope_role="patient")
        self.assertEqual([r.record_id for r in results], ["rec-2"])

    def test_3_doctor_scope_follows_grants(self):
        doctor = wallet("Doctor 1")
        self.assertEqual(self.records.search("north", scope_wallet=doctor, scope_role="doctor"), [])

        self.access.grant(wallet("Patient 1"), doctor)
        results = self.records.search("north", scope_wallet=doctor, scope_role="doctor", scope_numeric_id=7)
        self.assertEqual([r.record_id for r in results], ["rec-1"])

        self.access.revoke(wallet("Patient 1"), doctor)
        self.assertEqual(self.records.search("north", scope_wallet=doctor, scope_role="doctor"), [])

    def test_4_diagnostic_scope_is_own_records(self):
        results = self.records.search("north", scope_wallet=wallet("Diagnostic 1"), scope_role="diagnostic")
        self.assertEqual([r.record_id for r in results], ["rec-1"])

    def test_5_wildcards_are_literal(self):
        self.assertEqual(self.records.search("%"), [])
        self.assertEqual(self.records.search("x_ray"), [])

    def test_6_every_search_is_logged(self):
        self.records.search("north", scope_wallet=wallet("Patient 1"), scope_role="patient", origin="10.0.0.1")
        self.records.search("nothing-matches")

        logs = self.activity.list_access_logs("search")
        self.assertEqual(len(logs), 2)
        self.assertEqual({log.action for log in logs}, {"search"})
        self.assertEqual({log.accessor_role for log in logs}, {"patient", "user"})

    def test_7_empty_query(self):
        with self.assertRaises(PayloadRejected):
            self.records.search("   ")


class TestFetchContent(RecordsTestCase):
    def test_1_owner_reads_content(self):
        data = self.records.fetch_content("rec-1", wallet("Patient 1"), "patient")

        self.assertEqual(data, b"encrypted-lipid-panel")
        logs = self.activity.list_access_logs("rec-1")
        self.assertEqual([log.action for log in logs], ["view"])

    def test_2_doctor_needs_grant(self):
        with self.assertRaises(Forbidden):
            self.records.fetch_content("rec-1", wallet("Doctor 1"), "doctor", 7)

        self.access.grant(wallet("Patient 1"), wallet("Doctor 1"))
        self.assertEqual(self.records.fetch_content("rec-1", wallet("Doctor 1"), "doctor", 7),
                         b"encrypted-lipid-panel")

    def test_3_creator_diagnostic_reads_content(self):
        self.assertEqual(self.records.fetch_content("rec-1", wallet("Diagnostic 1"), "diagnostic"),
                         b"encrypted-lipid-panel")
        with self.assertRaises(Forbidden):
            self.records.fetch_content("rec-2", wallet("Diagnostic 1"), "diagnostic")

    def test_4_content_store_failure_propagates(self):
        self.store.down = True
        with self.assertRaises(ContentStoreUnavailable):
            self.records.fetch_content("rec-1", wallet("Patient 1"), "patient")
        self.assertEqual(count(self.cache, AccessLog, action="view"), 0)


if __name__ == "__main__":
    unittest.main()

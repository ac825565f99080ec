import sys
import unittest
from datetime import date, timedelta
from pathlib import Path

from fastapi.testclient import TestClient

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from loan_fixtures import make_session_factory, seed_borrower, seed_loan  # noqa: E402

import LoanDesk as app_module  # noqa: E402
from models.loan_models import AuditLog, Resource  # noqa: E402


DAMAGED_NOTES = '[Resource ID R1]\nDamages: [Cracked Screen, Broken Hinge] | Notes: "dropped"'


class LoanApiTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()

        def _override():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_loan_db] = _override
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _seed(self, **kwargs):
        with self.Session() as db:
            return seed_loan(db, **kwargs).LoanID

    def test_healthcheck(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_request_authorize_and_return_flow(self):
        with self.Session() as db:
            db.add_all([Resource(ResourceID="R1", Status="Available"), Resource(ResourceID="R2", Status="Available")])
            borrower_id = seed_borrower(db).BorrowerID
            db.commit()

        created = self.client.post(
            "/api/loans",
            json={
                "borrowerID": borrower_id,
                "resourceIDs": ["R1", "R2"],
                "expectedReturnDate": (date.today() + timedelta(days=3)).isoformat(),
                "gradeName": "5th Grade",
                "sectionName": "B",
            },
        )
        self.assertEqual(created.status_code, 200)
        loan_id = created.json()["loanID"]
        self.assertEqual(created.json()["status"], "Pending")

        authorized = self.client.post(f"/api/loans/{loan_id}/authorize")
        self.assertEqual(authorized.status_code, 200)
        self.assertEqual(authorized.json()["status"], "Active")
        self.assertEqual({r["status"] for r in authorized.json()["resources"]}, {"Loaned"})

        returned = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={
                "damageReports": [{"resourceID": "R1", "damages": ["Cracked Screen", "Broken Hinge"], "notes": "dropped"}],
                "suggestions": [{"resourceID": "R2", "suggestions": ["Clean Keyboard"]}],
            },
        )
        self.assertEqual(returned.status_code, 200)
        body = returned.json()
        self.assertEqual(body["status"], "Returned")
        self.assertEqual(body["overdueDays"], 0)
        self.assertEqual(body["resources"], {"R1": "Damaged", "R2": "Available"})
        self.assertEqual([i["incidentNumber"] for i in body["incidents"]], [1, 2])

        reports = self.client.get(f"/api/loans/{loan_id}/reports").json()
        self.assertIsNotNone(reports["timestamp"])
        by_resource = {report["resourceID"]: report for report in reports["reports"]}
        self.assertEqual(by_resource["R1"]["damages"], ["Cracked Screen", "Broken Hinge"])
        self.assertEqual(by_resource["R1"]["damageNotes"], "dropped")
        self.assertEqual(by_resource["R2"]["suggestions"], ["Clean Keyboard"])

        with self.Session() as db:
            actions = [row.Action for row in db.query(AuditLog).order_by(AuditLog.AuditID)]
        self.assertEqual(actions, ["Request", "Authorize", "Return"])

    def test_return_with_raw_notes_and_overdue(self):
        loan_id = self._seed(resource_ids=("R1",), expected_return=date(2024, 1, 10))
        response = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={"notes": DAMAGED_NOTES, "returnedAt": "2024-01-15T10:30:00"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["overdueDays"], 5)

        state = self.client.get("/api/resources/R1/maintenance").json()
        self.assertEqual(state["totalIncidents"], 2)
        self.assertEqual(state["completionPercentage"], 0)
        self.assertEqual(state["resourceStatus"], "Damaged")
        self.assertEqual(state["primaryReporter"], "Ana Torres")

    def test_second_return_is_conflict(self):
        loan_id = self._seed(resource_ids=("R1",))
        first = self.client.post(f"/api/loans/{loan_id}/return", json={"notes": DAMAGED_NOTES})
        self.assertEqual(first.status_code, 200)

        second = self.client.post(f"/api/loans/{loan_id}/return", json={"notes": DAMAGED_NOTES})
        self.assertEqual(second.status_code, 409)
        self.assertEqual(len(self.client.get("/api/resources/R1/incidents").json()), 2)

    def test_unknown_ids_are_not_found(self):
        self.assertEqual(self.client.post("/api/loans/999/return", json={}).status_code, 404)
        self.assertEqual(self.client.get("/api/loans/999").status_code, 404)
        self.assertEqual(self.client.get("/api/resources/nope/maintenance").status_code, 404)

        loan_id = self._seed(resource_ids=("R1",))
        response = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={"notes": "[Resource ID GHOST]\nDamages: [Dent]"},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.get(f"/api/loans/{loan_id}").json()["actualReturnDate"], None)
        with self.Session() as db:
            self.assertEqual(db.get(Resource, "R1").Status, "Loaned")

    def test_return_rejects_mixed_structured_and_raw_input(self):
        loan_id = self._seed(resource_ids=("R1",))
        response = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={"damageReports": [{"resourceID": "R1", "damages": ["Dent"]}], "notes": DAMAGED_NOTES},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIsNone(self.client.get(f"/api/loans/{loan_id}").json()["actualReturnDate"])

    def test_return_rejects_tag_that_breaks_notes_format(self):
        loan_id = self._seed(resource_ids=("R1",))
        response = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={"damageReports": [{"resourceID": "R1", "damages": ["Screen, left corner"]}]},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/resources/R1/incidents").json(), [])

    def test_incident_completion_resolves_resource(self):
        loan_id = self._seed(resource_ids=("R1",))
        self.client.post(f"/api/loans/{loan_id}/return", json={"notes": "[Resource ID R1]\nDamages: [Scratch]"})
        (incident,) = self.client.get("/api/resources/R1/incidents").json()

        moved = self.client.post("/api/resources/R1/maintenance-status", json={"status": "InRepair"})
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.json()["overallStatus"], "InRepair")

        done = self.client.post(
            f"/api/maintenance/incidents/{incident['incidentID']}/status",
            json={"status": "Completed", "notes": "polished"},
        )
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json()["summary"]["completionPercentage"], 100)
        self.assertEqual(done.json()["summary"]["overallStatus"], "Completed")
        self.assertEqual(done.json()["summary"]["resourceStatus"], "Available")

        again = self.client.post(
            f"/api/maintenance/incidents/{incident['incidentID']}/status",
            json={"status": "InProgress"},
        )
        self.assertEqual(again.status_code, 400)


if __name__ == "__main__":
    unittest.main()

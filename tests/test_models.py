"""Tests for data classes (fleetctl.models) and the error taxonomy (fleetctl.errors)."""

from __future__ import annotations

import unittest

from fleetctl.errors import AggregateError, FleetError, WaitTimeoutError
from fleetctl.models import Appliance, BackupRecord, GlobalSettings, RepositoryFile, UpgradeStatus


class ApplianceTests(unittest.TestCase):
    def test_from_dict_defaults(self):
        a = Appliance.from_dict({"id": "x", "name": "X"})
        self.assertEqual(a.functions, {})
        self.assertIsNone(a.admin_hostname)
        self.assertFalse(a.activated)
        self.assertEqual(a.site, "")

    def test_function_flags(self):
        a = Appliance.from_dict(
            {"id": "x", "name": "X", "gateway": {"enabled": True}, "logForwarder": {"enabled": False}}
        )
        self.assertTrue(a.function_enabled("gateway"))
        self.assertTrue(a.has_function("logforwarder"))
        self.assertFalse(a.function_enabled("logforwarder"))
        self.assertFalse(a.has_function("portal"))

    def test_to_dict(self):
        a = Appliance(id="x", name="X", functions={"portal": True})
        self.assertEqual(a.to_dict()["functions"], {"portal": True})


class StatusTests(unittest.TestCase):
    def test_upgrade_status(self):
        s = UpgradeStatus.from_dict("x", {"status": "failed", "details": "checksum mismatch"})
        self.assertEqual((s.appliance_id, s.status, s.details), ("x", "failed", "checksum mismatch"))

    def test_backup_record_defaults(self):
        r = BackupRecord(appliance_id="x")
        self.assertEqual(r.to_dict()["status"], "processing")
        self.assertIsNone(r.destination)

    def test_global_settings(self):
        self.assertTrue(GlobalSettings.from_dict({"backupApiEnabled": True}).backup_api_enabled)

    def test_repository_file(self):
        f = RepositoryFile.from_dict(
            {
                "name": "appgate-6.2.1.img.zip",
                "status": "Failed",
                "creationTime": "2024-01-01T10:00:00Z",
                "failureReason": "checksum mismatch",
            }
        )
        self.assertFalse(f.ready)
        self.assertEqual((f.created_at, f.modified_at), ("2024-01-01T10:00:00Z", ""))
        self.assertEqual(f.to_dict()["failure_reason"], "checksum mismatch")
        self.assertTrue(RepositoryFile(name="a", status="Ready").ready)


class AggregateErrorTests(unittest.TestCase):
    def test_from_errors_skips_none(self):
        self.assertIsNone(AggregateError.from_errors([None, None]))

    def test_flattens_and_renders(self):
        inner = AggregateError([FleetError("a")])
        agg = AggregateError.from_errors([inner, None, FleetError("b")])
        self.assertEqual(len(agg), 2)
        self.assertEqual(str(agg), "2 errors occurred:\n\t* a\n\t* b")
        self.assertEqual([str(e) for e in agg], ["a", "b"])

    def test_single(self):
        self.assertEqual(str(AggregateError([FleetError("a")])), "1 error occurred:\n\t* a")

    def test_wait_timeout_is_timeout(self):
        self.assertTrue(issubclass(WaitTimeoutError, TimeoutError))
        self.assertTrue(issubclass(WaitTimeoutError, FleetError))


if __name__ == "__main__":
    unittest.main()

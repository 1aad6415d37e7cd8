"""
Runner Pool - Registration Protocol Tests

issue, and on conflict: look up, delete exactly one stale runner, issue
once more.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from controller.registration import register_worker, runner_labels
from core.errors import (
    ConflictRecoveryAmbiguous,
    RegistrationConflict,
    RegistrationError,
)
from fixtures.registration import FakeRegistrationBackend

NAME = "gha-runner-107"
LABELS = ["self-hosted", "linux"]


class _NamelessIdBackend(FakeRegistrationBackend):
    """Answers the runner lookup with records that lack an id."""

    def list_by_name(self, name):
        return [{k: v for k, v in r.items() if k != "id"}
                for r in super().list_by_name(name)]


class TestRunnerLabels(unittest.TestCase):

    def test_prefixed(self):
        self.assertEqual(runner_labels(["linux", "x64"]), ["self-hosted", "linux", "x64"])

    def test_no_duplicate_self_hosted(self):
        self.assertEqual(runner_labels(["self-hosted", "linux"]), ["self-hosted", "linux"])


class TestRegisterWorker(unittest.TestCase):

    def setUp(self):
        self.backend = FakeRegistrationBackend()

    def test_happy_path_single_issue(self):
        credential = register_worker(self.backend, NAME, LABELS, 1)
        self.assertTrue(credential.startswith("jit-gha-runner-107"))
        self.assertEqual(len(self.backend.calls_for("issue")), 1)
        self.assertEqual(self.backend.calls_for("issue")[0], (NAME, LABELS, 1))
        self.assertEqual(self.backend.calls_for("list_by_name"), [])

    def test_stale_registration_recovered(self):
        stale_id = self.backend.add_runner(NAME)
        credential = register_worker(self.backend, NAME, LABELS, 1)

        # the credential of the second issue call, not of the stale runner
        self.assertEqual(stale_id, 1)
        self.assertEqual(credential, "jit-gha-runner-107-2")
        self.assertEqual(self.backend.calls_for("delete"), [(stale_id,)])
        self.assertEqual(len(self.backend.calls_for("issue")), 2)

    def test_prefix_matches_are_not_exact(self):
        # gha-runner-1070 must not be taken for gha-runner-107
        self.backend.add_runner("gha-runner-1070")
        stale_id = self.backend.add_runner(NAME)
        register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(self.backend.calls_for("delete"), [(stale_id,)])

    def test_no_match_is_ambiguous(self):
        self.backend.issue_errors.append(
            RegistrationConflict("generate jitconfig", status_code=409)
        )
        with self.assertRaises(ConflictRecoveryAmbiguous) as ctx:
            register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(ctx.exception.matches, 0)
        self.assertEqual(self.backend.calls_for("delete"), [])
        self.assertEqual(len(self.backend.calls_for("issue")), 1)

    def test_two_matches_is_ambiguous(self):
        self.backend.add_runner(NAME)
        self.backend.add_runner(NAME)
        with self.assertRaises(ConflictRecoveryAmbiguous) as ctx:
            register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(ctx.exception.matches, 2)
        self.assertEqual(self.backend.calls_for("delete"), [])

    def test_second_conflict_propagates(self):
        self.backend.add_runner(NAME)
        self.backend.issue_errors.extend([
            RegistrationConflict("generate jitconfig", status_code=409),
            RegistrationConflict("generate jitconfig", status_code=409),
        ])
        with self.assertRaises(RegistrationConflict):
            register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(len(self.backend.calls_for("issue")), 2)
        self.assertEqual(len(self.backend.calls_for("delete")), 1)

    def test_other_error_not_recovered(self):
        self.backend.issue_errors.append(
            RegistrationError("generate jitconfig", "boom", status_code=500)
        )
        with self.assertRaises(RegistrationError):
            register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(self.backend.calls_for("list_by_name"), [])

    def test_record_without_id_not_deleted(self):
        backend = _NamelessIdBackend()
        backend.add_runner(NAME)
        with self.assertRaises(RegistrationError):
            register_worker(backend, NAME, LABELS, 1)
        self.assertEqual(backend.calls_for("delete"), [])
        self.assertEqual(len(backend.calls_for("issue")), 1)

    def test_delete_failure_propagates(self):
        self.backend.add_runner(NAME)
        self.backend.fail_delete = RegistrationError("delete runner", status_code=500)
        with self.assertRaises(RegistrationError):
            register_worker(self.backend, NAME, LABELS, 1)
        self.assertEqual(len(self.backend.calls_for("issue")), 1)


if __name__ == "__main__":
    unittest.main()

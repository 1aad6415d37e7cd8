"""
Runner Pool - Member Lifecycle Tests

RUNNING -> STOPPED on old age, STOPPED -> ABSENT after the grace period.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from controller.lifecycle import (
    FleetMember,
    LifecycleEngine,
    MemberState,
    creation_time,
)
from core.errors import DeadlineExceeded, HypervisorError
from fixtures.hypervisor import FakeHypervisor

NOW = 1_700_000_000


def _summary(vmid, status, node="pve1"):
    return {"vmid": vmid, "node": node, "status": status}


class TestCreationTime(unittest.TestCase):

    def test_ctime_read_from_meta(self):
        self.assertEqual(creation_time({"meta": "creation-qemu=8.1.2,ctime=123"}), 123)

    def test_missing_meta_is_epoch(self):
        self.assertEqual(creation_time({}), 0)

    def test_malformed_ctime_is_epoch(self):
        self.assertEqual(creation_time({"meta": "ctime=abc"}), 0)


class TestFleetMember(unittest.TestCase):

    def test_states(self):
        self.assertIs(FleetMember(100, "pve1", "running").state, MemberState.RUNNING)
        self.assertIs(FleetMember(100, "pve1", "stopped").state, MemberState.STOPPED)
        self.assertIs(FleetMember(100, "pve1", "paused").state, MemberState.OTHER)

    def test_age(self):
        self.assertEqual(FleetMember(100, "pve1", "running", created_at=NOW - 30).age(NOW), 30)


class TestEvaluate(unittest.TestCase):

    def setUp(self):
        self.hv = FakeHypervisor()
        self.engine = LifecycleEngine(self.hv, max_age_seconds=1200,
                                      stop_grace_seconds=120, task_timeout=5)

    def _evaluate(self, vmid, status, ctime):
        self.hv.add_vm(vmid, status=status, ctime=ctime)
        member = self.engine.observe(_summary(vmid, status))
        return self.engine.evaluate(member, NOW)

    def test_young_running_untouched(self):
        state = self._evaluate(100, "running", NOW - 60)
        self.assertIs(state, MemberState.RUNNING)
        self.assertEqual(self.hv.calls_for("qemu_set_status"), [])

    def test_old_running_stopped_then_kept_within_grace(self):
        # max age 1200 passed, but with grace 1300 the stopped VM stays
        engine = LifecycleEngine(self.hv, max_age_seconds=1200, stop_grace_seconds=1300)
        self.hv.add_vm(100, status="running", ctime=NOW - 1250)
        state = engine.evaluate(engine.observe(_summary(100, "running")), NOW)

        self.assertIs(state, MemberState.STOPPED)
        self.assertEqual(self.hv.calls_for("qemu_set_status"), [("pve1", 100, "stop")])
        self.assertEqual(self.hv.calls_for("qemu_delete"), [])

    def test_old_running_stopped_and_deleted_same_pass(self):
        state = self._evaluate(100, "running", NOW - 1200)
        self.assertIs(state, MemberState.ABSENT)
        self.assertEqual(self.hv.calls_for("qemu_set_status"), [("pve1", 100, "stop")])
        self.assertEqual(self.hv.calls_for("qemu_delete"), [("pve1", 100)])
        self.assertNotIn(100, self.hv.vms)

    def test_every_task_waited_with_timeout(self):
        self._evaluate(100, "running", NOW - 1200)
        waits = self.hv.calls_for("wait_task")
        self.assertEqual(len(waits), 2)
        self.assertTrue(all(timeout == 5 for _, _, timeout in waits))

    def test_stopped_within_grace_kept(self):
        state = self._evaluate(100, "stopped", NOW - 119)
        self.assertIs(state, MemberState.STOPPED)
        self.assertEqual(self.hv.calls_for("qemu_delete"), [])

    def test_stopped_after_grace_deleted(self):
        state = self._evaluate(100, "stopped", NOW - 120)
        self.assertIs(state, MemberState.ABSENT)

    def test_missing_ctime_reclaimed(self):
        state = self._evaluate(105, "stopped", None)
        self.assertIs(state, MemberState.ABSENT)

    def test_age_out_disabled(self):
        engine = LifecycleEngine(self.hv, max_age_seconds=0)
        self.hv.add_vm(100, status="running", ctime=0)
        state = engine.evaluate(engine.observe(_summary(100, "running")), NOW)
        self.assertIs(state, MemberState.RUNNING)

    def test_other_status_untouched(self):
        state = self._evaluate(100, "paused", 0)
        self.assertIs(state, MemberState.OTHER)
        self.assertEqual(self.hv.calls_for("qemu_delete"), [])

    def test_stop_timeout_propagates(self):
        self.hv.hang("qemu_set_status")
        self.hv.add_vm(100, status="running", ctime=0)
        member = self.engine.observe(_summary(100, "running"))
        with self.assertRaises(DeadlineExceeded):
            self.engine.evaluate(member, NOW)
        self.assertEqual(self.hv.calls_for("qemu_delete"), [])

    def test_delete_failure_propagates(self):
        self.hv.fail("qemu_delete", vmid=100)
        self.hv.add_vm(100, status="stopped", ctime=0)
        member = self.engine.observe(_summary(100, "stopped"))
        with self.assertRaises(HypervisorError):
            self.engine.evaluate(member, NOW)


if __name__ == "__main__":
    unittest.main()

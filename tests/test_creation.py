"""
Runner Pool - Creation Workflow Tests

clone -> wait -> mint token -> seed smbios1/meta -> start.
"""

import base64
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from controller.creation import CreationWorkflow, nocloud_serial
from controller.properties import PropertyList
from controller.tokens import ProvisioningTokens
from core.errors import DeadlineExceeded, HypervisorError
from fixtures.hypervisor import FakeHypervisor
from fixtures.settings import make_settings

NOW = 1_700_000_000


class TestNocloudSerial(unittest.TestCase):

    def test_encodes_datasource(self):
        serial = nocloud_serial("http://10.0.0.2:8080/cloud-init/tok/")
        self.assertEqual(
            base64.b64decode(serial).decode(),
            "ds=nocloud;s=http://10.0.0.2:8080/cloud-init/tok/",
        )


class TestCreate(unittest.TestCase):

    def setUp(self):
        self.settings = make_settings(proxmox_full_clone=True, task_timeout_seconds=30)
        self.hv = FakeHypervisor(node="pve1", pool="gha", template_vmid=9000)
        self.tokens = ProvisioningTokens(self.settings.jwt_secret)
        self.workflow = CreationWorkflow(self.hv, self.tokens, self.settings, clock=lambda: NOW)

    def test_returns_runner_name(self):
        self.assertEqual(self.workflow.create(100), "gha-runner-100")

    def test_call_order(self):
        self.workflow.create(100)
        operations = [op for op, _ in self.hv.calls]
        self.assertEqual(operations, [
            "qemu_clone", "wait_task", "qemu_config", "qemu_set_config", "qemu_set_status",
        ])

    def test_clone_arguments(self):
        self.workflow.create(100)
        self.assertEqual(
            self.hv.calls_for("qemu_clone"),
            [("pve1", 9000, 100, "gha-runner-100", "gha", True)],
        )
        self.assertEqual(self.hv.calls_for("wait_task")[0][2], 30)

    def test_start_not_waited(self):
        self.workflow.create(100)
        self.assertEqual(self.hv.calls_for("qemu_set_status"), [("pve1", 100, "start")])
        self.assertEqual(len(self.hv.calls_for("wait_task")), 1)
        self.assertEqual(self.hv.vms[100]["status"], "running")

    def test_smbios_seeded_and_uuid_kept(self):
        self.workflow.create(100)
        smbios = PropertyList.parse(self.hv.vms[100]["config"]["smbios1"])
        self.assertEqual(smbios["uuid"], "00000000-0000-4000-8000-000000009000")
        self.assertEqual(smbios["base64"], "1")

        decoded = base64.b64decode(smbios["serial"]).decode()
        prefix = "ds=nocloud;s=http://10.0.0.2:8080/cloud-init/"
        self.assertTrue(decoded.startswith(prefix))
        self.assertTrue(decoded.endswith("/"))

    def test_serial_token_names_the_runner(self):
        self.workflow.create(100)
        smbios = PropertyList.parse(self.hv.vms[100]["config"]["smbios1"])
        decoded = base64.b64decode(smbios["serial"]).decode()
        token = decoded.rstrip("/").rsplit("/", 1)[-1]
        self.assertEqual(self.tokens.verify(token), "gha-runner-100")

    def test_ctime_stamped_when_missing(self):
        self.workflow.create(100)
        meta = PropertyList.parse(self.hv.vms[100]["config"]["meta"])
        self.assertEqual(meta.get_int("ctime"), NOW)

    def test_existing_ctime_left_alone(self):
        changes = self.workflow.seed_changes(
            {"meta": "creation-qemu=8.1.2,ctime=1699999999", "smbios1": "uuid=x"},
            "http://10.0.0.2:8080/cloud-init/tok/",
        )
        self.assertNotIn("meta", changes)
        self.assertIn("smbios1", changes)

    def test_unchanged_smbios_not_written(self):
        url = "http://10.0.0.2:8080/cloud-init/tok/"
        seeded = f"uuid=x,base64=1,serial={nocloud_serial(url)}"
        changes = self.workflow.seed_changes({"meta": "ctime=1", "smbios1": seeded}, url)
        self.assertEqual(changes, {})

    def test_clone_failure_stops_workflow(self):
        self.hv.fail("qemu_clone")
        with self.assertRaises(HypervisorError):
            self.workflow.create(100)
        self.assertEqual(self.hv.calls_for("qemu_set_status"), [])

    def test_clone_timeout_stops_workflow(self):
        self.hv.hang("qemu_clone")
        with self.assertRaises(DeadlineExceeded):
            self.workflow.create(100)
        self.assertEqual(self.hv.calls_for("qemu_config"), [])

    def test_config_write_failure_leaves_vm_unstarted(self):
        self.hv.fail("qemu_set_config", vmid=100)
        with self.assertRaises(HypervisorError):
            self.workflow.create(100)
        self.assertEqual(self.hv.vms[100]["status"], "stopped")


if __name__ == "__main__":
    unittest.main()

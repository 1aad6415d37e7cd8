"""
Runner Pool - Configuration Tests

Three-tier loading (base file, overlay, environment), coercion and
validation of PoolSettings.
"""

import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

import yaml

from core.config import PoolSettings, deep_merge, load_config, load_settings
from core.errors import ConfigurationError
from fixtures.settings import BASE_SETTINGS


class TestDeepMerge(unittest.TestCase):

    def test_flat_merge(self):
        self.assertEqual(deep_merge({"a": 1, "b": 2}, {"b": 3}), {"a": 1, "b": 3})

    def test_nested_merge(self):
        result = deep_merge({"x": {"a": 1, "b": 2}}, {"x": {"b": 3}})
        self.assertEqual(result, {"x": {"a": 1, "b": 3}})

    def test_immutability(self):
        base = {"x": {"a": 1}}
        deep_merge(base, {"x": {"a": 2}})
        self.assertEqual(base, {"x": {"a": 1}})


class TestFromMapping(unittest.TestCase):

    def test_valid_with_defaults(self):
        settings = PoolSettings.from_mapping(BASE_SETTINGS)
        self.assertEqual(settings.host, "::")
        self.assertEqual(settings.max_age_seconds, 1200)
        self.assertEqual(settings.stop_grace_seconds, 120)
        self.assertEqual(settings.reconcile_interval_seconds, 5.0)
        self.assertTrue(settings.isolate_member_failures)
        self.assertFalse(settings.proxmox_full_clone)

    def test_string_values_coerced(self):
        raw = {k: str(v) for k, v in BASE_SETTINGS.items()}
        raw["proxmox_insecure_tls"] = "false"
        raw["proxmox_full_clone"] = "yes"
        settings = PoolSettings.from_mapping(raw)
        self.assertEqual(settings.port, 8080)
        self.assertEqual(settings.proxmox_min_vmid, 100)
        self.assertFalse(settings.proxmox_insecure_tls)
        self.assertTrue(settings.proxmox_full_clone)

    def test_all_errors_reported_together(self):
        raw = dict(BASE_SETTINGS)
        del raw["proxmox_node"]
        raw["port"] = "eighty"
        raw["labels"] = "linux, x64"
        raw["jwt_secret"] = ""
        with self.assertRaises(ConfigurationError) as ctx:
            PoolSettings.from_mapping(raw)
        errors = " | ".join(ctx.exception.errors)
        self.assertEqual(len(ctx.exception.errors), 4)
        self.assertIn("PROXMOX_NODE is required", errors)
        self.assertIn("PORT has an invalid value", errors)
        self.assertIn("LABELS", errors)
        self.assertIn("JWT_SECRET is required", errors)

    def test_min_above_max_rejected(self):
        raw = {**BASE_SETTINGS, "proxmox_min_vmid": 120, "proxmox_max_vmid": 110}
        with self.assertRaises(ConfigurationError) as ctx:
            PoolSettings.from_mapping(raw)
        self.assertIn("PROXMOX_MIN_VMID", ctx.exception.errors[0])

    def test_vmid_below_100_rejected(self):
        with self.assertRaises(ConfigurationError):
            PoolSettings.from_mapping({**BASE_SETTINGS, "proxmox_min_vmid": 50})

    def test_bad_bool_and_log_level(self):
        raw = {**BASE_SETTINGS, "proxmox_insecure_tls": "maybe", "log_level": "chatty"}
        with self.assertRaises(ConfigurationError) as ctx:
            PoolSettings.from_mapping(raw)
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_secrets_not_in_repr(self):
        settings = PoolSettings.from_mapping(BASE_SETTINGS)
        self.assertNotIn(BASE_SETTINGS["jwt_secret"], repr(settings))
        self.assertNotIn(BASE_SETTINGS["proxmox_token"], repr(settings))

    def test_derived_values(self):
        settings = PoolSettings.from_mapping({
            **BASE_SETTINGS, "labels": "linux,x64", "public_url": "http://h:1/",
        })
        self.assertEqual(settings.label_list, ["linux", "x64"])
        self.assertEqual(settings.runner_name(107), "gha-runner-107")
        self.assertEqual(settings.cloud_init_url("tok"), "http://h:1/cloud-init/tok/")


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base_path = os.path.join(self.tmpdir, "runner_pool.yaml")
        with open(self.base_path, "w") as f:
            yaml.safe_dump({k.upper(): v for k, v in BASE_SETTINGS.items()}, f)
        os.makedirs(os.path.join(self.tmpdir, "config"))
        with open(os.path.join(self.tmpdir, "config", "staging.yaml"), "w") as f:
            yaml.safe_dump({"minimum_runners": 4, "labels": "staging"}, f)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_base_file_keys_lowercased(self):
        config = load_config(self.base_path, environ={})
        self.assertEqual(config["proxmox_node"], "pve1")

    def test_missing_base_file_is_ok(self):
        config = load_config(os.path.join(self.tmpdir, "missing.yaml"), environ={})
        self.assertEqual(config, {})

    def test_overlay_merges_over_base(self):
        config = load_config(
            self.base_path, env="staging",
            config_dir=os.path.join(self.tmpdir, "config"), environ={},
        )
        self.assertEqual(config["minimum_runners"], 4)
        self.assertEqual(config["proxmox_node"], "pve1")

    def test_overlay_from_environment(self):
        config = load_config(self.base_path, environ={
            "RP_ENV": "staging",
            "RP_CONFIG_DIR": os.path.join(self.tmpdir, "config"),
        })
        self.assertEqual(config["labels"], "staging")

    def test_env_vars_override_everything(self):
        settings = load_settings(
            self.base_path, env="staging",
            config_dir=os.path.join(self.tmpdir, "config"),
            environ={"MINIMUM_RUNNERS": "7", "PROXMOX_FULL_CLONE": "true"},
        )
        self.assertEqual(settings.minimum_runners, 7)
        self.assertTrue(settings.proxmox_full_clone)

    def test_secret_from_file(self):
        secret_path = os.path.join(self.tmpdir, "jwt")
        with open(secret_path, "w") as f:
            f.write("from-a-mounted-file\n")
        settings = load_settings(self.base_path, environ={"JWT_SECRET_FILE": secret_path})
        self.assertEqual(settings.jwt_secret, "from-a-mounted-file")

    def test_base_path_from_environment(self):
        settings = load_settings(environ={"RP_CONFIG": self.base_path})
        self.assertEqual(settings.proxmox_pool, "gha")

    def test_invalid_yaml(self):
        with open(self.base_path, "w") as f:
            f.write("port: [unclosed\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.base_path, environ={})

    def test_non_mapping_yaml(self):
        with open(self.base_path, "w") as f:
            f.write("- a\n- b\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.base_path, environ={})


if __name__ == "__main__":
    unittest.main()

import copy
import json
import unittest

import yaml

from src.common.errors import UnresolvedReference
from src.common.models import ServiceBinding
from src.mapping import DEFAULT_PATHS, PathSet
from src.projector import BindingProjector, derived_name, ownership_key, read_created, read_record
from src.selector import TargetContainer, TargetSelector

DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: shop
  namespace: default
spec:
  template:
    spec:
      containers:
        - name: web
          image: shop:1.0
          env:
            - name: LOG_LEVEL
              value: debug
          volumeMounts:
            - name: cache
              mountPath: /cache
        - name: sidecar
          image: proxy:2.1
      volumes:
        - name: cache
          emptyDir: {}
"""

ENTRIES = {"host": "db.local", "port": "5432", "url": "postgres://db.local:5432", "password": "s3cret"}


def _binding(name="db", env=None, containers=None, spec_name=None) -> ServiceBinding:
    spec = {
        "application": {"apiVersion": "apps/v1", "kind": "Deployment", "name": "shop"},
        "service": {"name": "db-credentials"},
        "env": env if env is not None else [{"name": "DB_URL", "key": "url"}],
    }
    if containers is not None:
        spec["application"]["containers"] = containers
    if spec_name:
        spec["name"] = spec_name
    return ServiceBinding.from_object(
        {
            "apiVersion": "service.binding/v1alpha2",
            "kind": "ServiceBinding",
            "metadata": {"name": name, "namespace": "default"},
            "spec": spec,
        }
    )


def _container(body, name):
    for container in body["spec"]["template"]["spec"]["containers"]:
        if container["name"] == name:
            return container
    raise AssertionError(f"container {name} missing")


class BindingProjectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.original = yaml.safe_load(DEPLOYMENT)
        self.selector = TargetSelector(store=None)
        self.projector = BindingProjector()

    def _apply(self, resource, binding, secret_name="db-credentials", entries=ENTRIES):
        target = self.selector.target_for(resource, binding.spec.application.containers, "default")
        return self.projector.apply(target, binding, secret_name, entries)

    def test_filtered_container_receives_env_and_mount(self) -> None:
        binding = _binding(containers=["web"])
        outcome = self._apply(self.original, binding)

        self.assertTrue(outcome.success)
        self.assertTrue(outcome.changed)
        self.assertEqual(outcome.containers, ["web"])
        body = outcome.patched
        web = _container(body, "web")
        self.assertIn(
            {"name": "DB_URL", "valueFrom": {"secretKeyRef": {"name": "db-credentials", "key": "url"}}},
            web["env"],
        )
        self.assertIn(
            {"name": derived_name("db"), "mountPath": "/bindings/db", "readOnly": True},
            web["volumeMounts"],
        )
        sidecar = _container(body, "sidecar")
        self.assertNotIn("env", sidecar)
        self.assertNotIn("volumeMounts", sidecar)
        volumes = body["spec"]["template"]["spec"]["volumes"]
        self.assertIn({"name": derived_name("db"), "secret": {"secretName": "db-credentials"}}, volumes)
        # the input resource is never mutated
        self.assertEqual(self.original, yaml.safe_load(DEPLOYMENT))

    def test_second_apply_is_a_no_op(self) -> None:
        binding = _binding()
        first = self._apply(self.original, binding)
        second = self._apply(first.patched, binding)
        self.assertEqual(second.patch, [])
        self.assertFalse(second.changed)

    def test_unrelated_entries_are_left_alone(self) -> None:
        outcome = self._apply(self.original, _binding())
        web = _container(outcome.patched, "web")
        self.assertEqual(web["env"][0], {"name": "LOG_LEVEL", "value": "debug"})
        self.assertEqual(web["volumeMounts"][0], {"name": "cache", "mountPath": "/cache"})
        self.assertEqual(outcome.patched["spec"]["template"]["spec"]["volumes"][0]["name"], "cache")

    def test_remove_restores_original_body(self) -> None:
        applied = self._apply(self.original, _binding()).patched
        removed = self.projector.remove(applied, DEFAULT_PATHS, "db")
        self.assertTrue(removed.changed)
        self.assertEqual(removed.patched, self.original)

    def test_remove_prunes_lists_it_created(self) -> None:
        bare = yaml.safe_load(DEPLOYMENT)
        bare["spec"]["template"]["spec"].pop("volumes")
        applied = self._apply(bare, _binding(containers=["sidecar"])).patched
        self.assertIn("volumes", applied["spec"]["template"]["spec"])
        removed = self.projector.remove(applied, DEFAULT_PATHS, "db").patched
        self.assertEqual(removed, bare)

    def test_two_bindings_share_a_container(self) -> None:
        first = self._apply(self.original, _binding(name="db")).patched
        cache_binding = _binding(name="cache", env=[{"name": "CACHE_HOST", "key": "host"}])
        both = self._apply(first, cache_binding, secret_name="cache-credentials").patched
        web = _container(both, "web")
        self.assertEqual([entry["name"] for entry in web["env"]], ["LOG_LEVEL", "DB_URL", "CACHE_HOST"])
        self.assertEqual(len(both["spec"]["template"]["spec"]["volumes"]), 3)

        only_cache = self.projector.remove(both, DEFAULT_PATHS, "db").patched
        web = _container(only_cache, "web")
        self.assertEqual([entry["name"] for entry in web["env"]], ["LOG_LEVEL", "CACHE_HOST"])
        self.assertIsNotNone(read_record(only_cache, "cache"))
        self.assertIsNone(read_record(only_cache, "db"))

    def test_application_order_commutes(self) -> None:
        db = _binding(name="db")
        cache = _binding(name="cache", env=[{"name": "CACHE_HOST", "key": "host"}])
        forward = self._apply(self._apply(self.original, db).patched, cache, "cache-credentials").patched
        backward = self._apply(self._apply(self.original, cache, "cache-credentials").patched, db).patched

        def env_by_name(body):
            return {entry["name"]: entry for entry in _container(body, "web")["env"]}

        self.assertEqual(env_by_name(forward), env_by_name(backward))
        self.assertEqual(forward["metadata"]["annotations"], backward["metadata"]["annotations"])

    def test_dropped_env_var_is_removed(self) -> None:
        applied = self._apply(self.original, _binding()).patched
        renamed = _binding(env=[{"name": "DB_HOST", "key": "host"}])
        outcome = self._apply(applied, renamed)
        names = [entry["name"] for entry in _container(outcome.patched, "web")["env"]]
        self.assertEqual(names, ["LOG_LEVEL", "DB_HOST"])
        self.assertEqual(read_record(outcome.patched, "db"), {"env": ["DB_HOST"], "secret": "db-credentials"})

    def test_secret_rename_updates_volume_in_place(self) -> None:
        applied = self._apply(self.original, _binding()).patched
        outcome = self._apply(applied, _binding(), secret_name="db-projection")
        volumes = outcome.patched["spec"]["template"]["spec"]["volumes"]
        owned = [volume for volume in volumes if volume["name"] == derived_name("db")]
        self.assertEqual(owned, [{"name": derived_name("db"), "secret": {"secretName": "db-projection"}}])

    def test_retargeting_within_workload_clears_old_container(self) -> None:
        applied = self._apply(self.original, _binding(containers=["web"])).patched
        moved = self._apply(applied, _binding(containers=["sidecar"])).patched
        web = _container(moved, "web")
        self.assertEqual([entry["name"] for entry in web["env"]], ["LOG_LEVEL"])
        self.assertEqual([mount["name"] for mount in web["volumeMounts"]], ["cache"])
        self.assertEqual(_container(moved, "sidecar")["env"][0]["name"], "DB_URL")

    def test_missing_env_key_fails(self) -> None:
        binding = _binding(env=[{"name": "DB_USER", "key": "username"}])
        with self.assertRaises(UnresolvedReference):
            self._apply(self.original, binding)

    def test_mount_path_uses_spec_name_and_mount_root(self) -> None:
        projector = BindingProjector("/var/run/bindings/")
        self.assertEqual(projector.mount_path(_binding(spec_name="orders-db")), "/var/run/bindings/orders-db")
        self.assertEqual(projector.mount_path(_binding()), "/var/run/bindings/db")

    def test_ownership_annotation_records_secret_and_env(self) -> None:
        body = self._apply(self.original, _binding()).patched
        raw = body["metadata"]["annotations"][ownership_key("db")]
        self.assertEqual(json.loads(raw), {"env": ["DB_URL"], "secret": "db-credentials"})

    def test_overwritten_env_var_is_restored_on_remove(self) -> None:
        local = yaml.safe_load(DEPLOYMENT)
        _container(local, "web")["env"].append({"name": "DB_URL", "value": "sqlite:///local"})
        pristine = copy.deepcopy(local)

        applied = self._apply(local, _binding(containers=["web"])).patched
        web_env = _container(applied, "web")["env"]
        self.assertEqual([entry["name"] for entry in web_env], ["LOG_LEVEL", "DB_URL"])
        self.assertEqual(web_env[1]["valueFrom"]["secretKeyRef"]["name"], "db-credentials")
        record = read_record(applied, "db")
        self.assertEqual(record["displaced"], {"web": {"DB_URL": {"name": "DB_URL", "value": "sqlite:///local"}}})

        # a second pass keeps the original entry rather than recording its own
        again = self._apply(applied, _binding(containers=["web"]))
        self.assertEqual(again.patch, [])

        removed = self.projector.remove(again.patched, DEFAULT_PATHS, "db").patched
        self.assertEqual(removed, pristine)

    def test_dropping_an_env_var_restores_what_it_displaced(self) -> None:
        local = yaml.safe_load(DEPLOYMENT)
        _container(local, "web")["env"].append({"name": "DB_URL", "value": "sqlite:///local"})
        applied = self._apply(local, _binding(containers=["web"])).patched

        renamed = self._apply(applied, _binding(env=[{"name": "DB_HOST", "key": "host"}], containers=["web"])).patched
        web_env = _container(renamed, "web")["env"]
        self.assertIn({"name": "DB_URL", "value": "sqlite:///local"}, web_env)
        self.assertNotIn("displaced", read_record(renamed, "db"))

    def test_existing_empty_lists_survive_remove(self) -> None:
        empty = yaml.safe_load(DEPLOYMENT)
        pod = empty["spec"]["template"]["spec"]
        pod["volumes"] = []
        pod["containers"][0]["env"] = []
        pristine = copy.deepcopy(empty)

        applied = self._apply(empty, _binding(containers=["web"])).patched
        self.assertEqual(read_created(applied), set())
        removed = self.projector.remove(applied, DEFAULT_PATHS, "db").patched
        self.assertEqual(removed["spec"]["template"]["spec"]["volumes"], [])
        self.assertEqual(_container(removed, "web")["env"], [])
        self.assertEqual(removed, pristine)

    def test_created_lists_are_shared_between_bindings(self) -> None:
        bare = yaml.safe_load(DEPLOYMENT)
        bare["spec"]["template"]["spec"].pop("volumes")
        first = self._apply(bare, _binding(name="db", containers=["sidecar"])).patched
        cache_binding = _binding(name="cache", env=[{"name": "CACHE_HOST", "key": "host"}], containers=["sidecar"])
        both = self._apply(first, cache_binding, secret_name="cache-credentials").patched

        without_db = self.projector.remove(both, DEFAULT_PATHS, "db").patched
        sidecar = _container(without_db, "sidecar")
        self.assertEqual([entry["name"] for entry in sidecar["env"]], ["CACHE_HOST"])
        self.assertEqual(len(without_db["spec"]["template"]["spec"]["volumes"]), 1)

        neither = self.projector.remove(without_db, DEFAULT_PATHS, "cache").patched
        self.assertEqual(neither, bare)

    def test_custom_mapping_paths(self) -> None:
        resource = {
            "apiVersion": "stable.example.com/v2",
            "kind": "CronTab",
            "metadata": {"name": "nightly", "namespace": "default"},
            "spec": {"jobs": [{"runner": {"name": "backup"}}]},
        }

        paths = PathSet(containers=(".spec.jobs[*].runner",), volumes=".spec.runnerVolumes")
        target = TargetContainer(resource=copy.deepcopy(resource), paths=paths, positions=(0,), containers=["backup"])
        body = self.projector.apply(target, _binding(), "db-credentials", ENTRIES).patched
        self.assertEqual(body["spec"]["runnerVolumes"][0]["name"], derived_name("db"))
        runner = body["spec"]["jobs"][0]["runner"]
        self.assertEqual(runner["env"][0]["name"], "DB_URL")
        self.assertEqual(runner["volumeMounts"][0]["mountPath"], "/bindings/db")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

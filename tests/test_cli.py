import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx
import typer
import yaml

from src.controller import cli
from src.controller.kube import KubernetesStore

STATE = """
apiVersion: v1
kind: Secret
metadata:
  name: db-credentials
  namespace: default
stringData:
  host: db.local
  port: "5432"
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: default
spec:
  template:
    spec:
      containers:
        - name: web
          image: shop:1.0
---
apiVersion: service.binding/v1alpha2
kind: ServiceBinding
metadata:
  name: db
  namespace: default
spec:
  application:
    apiVersion: apps/v1
    kind: Deployment
    name: web
  service:
    name: db-credentials
  env:
    - name: DB_HOST
      key: host
"""


class ReconcileCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        base = Path(self.tmpdir.name)
        self.state_path = base / "state.yaml"
        self.out_path = base / "out" / "state.yaml"
        self.report_path = base / "report.json"
        self.state_path.write_text(STATE, encoding="utf-8")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _run(self, **overrides) -> None:
        kwargs = dict(
            state=self.state_path,
            bindings=None,
            out=self.out_path,
            report=self.report_path,
            config=None,
            mount_root=None,
            jobs=None,
            log_level="WARNING",
        )
        kwargs.update(overrides)
        cli.reconcile(**kwargs)

    def test_reconcile_writes_state_and_report(self) -> None:
        self._run(mount_root="/etc/bindings")

        objects = {obj["kind"]: obj for obj in yaml.safe_load_all(self.out_path.read_text(encoding="utf-8"))}
        container = objects["Deployment"]["spec"]["template"]["spec"]["containers"][0]
        self.assertEqual(container["env"][0]["name"], "DB_HOST")
        self.assertEqual(container["volumeMounts"][0]["mountPath"], "/etc/bindings/db")
        self.assertEqual(objects["ServiceBinding"]["status"]["conditions"][0]["status"], "True")

        report = json.loads(self.report_path.read_text(encoding="utf-8"))
        self.assertEqual(report[0]["binding"], "default/db")
        self.assertTrue(report[0]["outcomes"][0]["success"])
        self.assertEqual(report[0]["outcomes"][0]["secret"], "db-credentials")
        # the input file is left alone when --out is given
        self.assertEqual(self.state_path.read_text(encoding="utf-8"), STATE)

    def test_explicit_binding_key(self) -> None:
        self._run(bindings=["db"])
        report = json.loads(self.report_path.read_text(encoding="utf-8"))
        self.assertEqual([entry["binding"] for entry in report], ["default/db"])

    def test_rewrites_state_in_place_without_out(self) -> None:
        self._run(out=None, report=None)
        self.assertIn("DB_HOST", self.state_path.read_text(encoding="utf-8"))

    def test_missing_state_file(self) -> None:
        with self.assertRaises(typer.BadParameter):
            self._run(state=Path(self.tmpdir.name) / "absent.yaml")

    def test_state_without_bindings(self) -> None:
        self.state_path.write_text(STATE.split("---")[0], encoding="utf-8")
        with self.assertRaises(typer.BadParameter):
            self._run()

    def test_malformed_binding_key(self) -> None:
        with self.assertRaises(typer.BadParameter):
            self._run(bindings=["default/"])


BINDING_PATH = "/apis/service.binding/v1alpha2/namespaces/default/servicebindings/db"


class ReconcileClusterCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        base = Path(self.tmpdir.name)
        self.config_path = base / "projector.yaml"
        self.report_path = base / "report.json"
        self.config_path.write_text(
            "token_env: BINDING_CLI_TEST_TOKEN\nfetch_retries: 1\ntimeout_seconds: 2\nbackoff_seconds: 0.01\n",
            encoding="utf-8",
        )
        binding = [obj for obj in yaml.safe_load_all(STATE) if obj["kind"] == "ServiceBinding"][0]
        binding["metadata"].update({"finalizers": ["service.binding/finalizer"], "resourceVersion": "3"})
        self.binding = binding
        self.requests = []
        self.sleeps = []
        self.list_responses = []

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.endswith("/servicebindings"):
            if self.list_responses:
                return self.list_responses.pop(0)
            listed = {key: value for key, value in self.binding.items() if key not in ("apiVersion", "kind")}
            return httpx.Response(200, json={"items": [listed]})
        if request.method == "GET" and path == BINDING_PATH:
            return httpx.Response(200, json=self.binding)
        if request.method == "PUT" and path == BINDING_PATH + "/status":
            return httpx.Response(200, json=json.loads(request.content))
        if path == "/api/v1/namespaces/default/secrets/db-credentials":
            return httpx.Response(403, json={"reason": "Forbidden"})
        return httpx.Response(404)

    def _run(self, token="cluster-token", **overrides) -> None:
        kwargs = dict(
            api_server="https://cluster.example:6443",
            namespace=None,
            bindings=None,
            report=self.report_path,
            config=self.config_path,
            mount_root=None,
            jobs=None,
            log_level="WARNING",
        )
        kwargs.update(overrides)
        from_config = KubernetesStore.from_config

        def with_transport(settings):
            return from_config(settings, transport=httpx.MockTransport(self._handler), sleep=self.sleeps.append)

        environ = {"BINDING_CLI_TEST_TOKEN": token} if token else {}
        with mock.patch.dict(os.environ, environ):
            with mock.patch.object(cli.KubernetesStore, "from_config", side_effect=with_transport):
                cli.reconcile_cluster(**kwargs)

    def test_reconciles_listed_bindings_against_the_api_server(self) -> None:
        self._run()

        first = self.requests[0]
        self.assertEqual(first.url.host, "cluster.example")
        self.assertEqual(first.url.path, "/apis/service.binding/v1alpha2/servicebindings")
        self.assertEqual(first.headers["Authorization"], "Bearer cluster-token")
        status_writes = [request for request in self.requests if request.method == "PUT"]
        self.assertEqual([request.url.path for request in status_writes], [BINDING_PATH + "/status"])

        report = json.loads(self.report_path.read_text(encoding="utf-8"))
        self.assertEqual(report[0]["binding"], "default/db")
        self.assertTrue(report[0]["requeue"])
        self.assertEqual(report[0]["outcomes"][0]["reason"], "FetchFailed")

    def test_namespace_option_scopes_the_listing(self) -> None:
        self._run(namespace="default")
        self.assertEqual(self.requests[0].url.path, "/apis/service.binding/v1alpha2/namespaces/default/servicebindings")

    def test_fetch_retries_come_from_config(self) -> None:
        self.list_responses.extend([httpx.Response(503), httpx.Response(503)])
        with self.assertRaises(typer.BadParameter):
            self._run()
        self.assertEqual(len(self.requests), 2)
        self.assertEqual(len(self.sleeps), 1)

    def test_explicit_binding_skips_the_listing(self) -> None:
        self._run(bindings=["default/db"])
        self.assertFalse(any(request.url.path.endswith("/servicebindings") for request in self.requests))

    def test_missing_token_is_rejected(self) -> None:
        with self.assertRaises(typer.BadParameter):
            self._run(token=None)
        self.assertEqual(self.requests, [])

    def test_api_server_must_be_http(self) -> None:
        with self.assertRaises(typer.BadParameter):
            self._run(api_server="cluster.example:6443")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

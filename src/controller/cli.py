from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import typer

from src.common.config import ProjectorConfig, load_config
from src.common.errors import FetchFailed
from src.common.models import BINDING_API_VERSION, BINDING_KIND, BindingStatus

from .kube import KubernetesStore
from .reconciler import ReconcileResult, Reconciler, binding_keys
from .store import InMemoryStore

app = typer.Typer(help="Project service binding secrets into workloads, from a YAML state file or a live cluster.")


def _parse_binding(value: str, default_namespace: str) -> Tuple[str, str]:
    namespace, _, name = value.rpartition("/")
    if not name:
        raise typer.BadParameter(f"Binding must be NAME or NAMESPACE/NAME, got {value!r}")
    return (namespace or default_namespace, name)


def _is_ready(status: Optional[BindingStatus]) -> bool:
    condition = status.condition("Ready") if status is not None else None
    return condition is not None and condition.status == "True"


def _settings(config: Optional[Path], **overrides) -> ProjectorConfig:
    try:
        return load_config(config).with_overrides(**overrides)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _write_report(report: Optional[Path], results: Sequence[ReconcileResult]) -> None:
    if report is None:
        return
    report.parent.mkdir(parents=True, exist_ok=True)
    report.write_text(json.dumps([result.to_dict() for result in results], indent=2), encoding="utf-8")


def _summary(results: Sequence[ReconcileResult]) -> str:
    ready = sum(1 for result in results if _is_ready(result.status))
    requeue = sum(1 for result in results if result.requeue)
    text = f"Reconciled {len(results)} binding(s), {ready} ready"
    if requeue:
        text += f", {requeue} to retry"
    return text


@app.command()
def reconcile(
    state: Path = typer.Option(
        Path("data/state.yaml"),
        "--state",
        "-s",
        help="Multi-document YAML with bindings, secrets, workloads and resource mappings.",
    ),
    bindings: Optional[List[str]] = typer.Option(
        None,
        "--binding",
        "-b",
        help="Binding to reconcile as NAMESPACE/NAME (repeatable; defaults to every ServiceBinding).",
    ),
    out: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Where to write the updated state YAML (defaults to rewriting --state).",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Optional path to write per-binding projection outcomes as JSON.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Projector configuration file.",
    ),
    mount_root: Optional[str] = typer.Option(
        None,
        "--mount-root",
        help="Directory under which binding secrets are mounted.",
    ),
    jobs: Optional[int] = typer.Option(
        None,
        "--jobs",
        "-j",
        min=1,
        help="Number of bindings to reconcile in parallel.",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    settings = _settings(config, mount_root=mount_root, jobs=jobs)

    try:
        store = InMemoryStore.from_yaml(state.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise typer.BadParameter(f"State file not found: {state}") from exc

    default_namespace = settings.namespace or "default"
    keys = [_parse_binding(value, default_namespace) for value in bindings or []]
    if not keys:
        keys = binding_keys(store.objects())
    if not keys:
        raise typer.BadParameter("No ServiceBinding objects found to reconcile.")

    reconciler = Reconciler(store, settings)
    results = reconciler.reconcile_all(keys)

    destination = out or state
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(store.to_yaml(), encoding="utf-8")
    _write_report(report, results)
    typer.echo(f"{_summary(results)}. State written to {destination.resolve()}")


@app.command("reconcile-cluster")
def reconcile_cluster(
    api_server: Optional[str] = typer.Option(
        None,
        "--api-server",
        help="Kubernetes API server URL (defaults to the in-cluster service).",
    ),
    namespace: Optional[str] = typer.Option(
        None,
        "--namespace",
        "-n",
        help="Namespace to list ServiceBindings from (defaults to all namespaces).",
    ),
    bindings: Optional[List[str]] = typer.Option(
        None,
        "--binding",
        "-b",
        help="Binding to reconcile as NAMESPACE/NAME (repeatable; defaults to every ServiceBinding listed).",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Optional path to write per-binding projection outcomes as JSON.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Projector configuration file.",
    ),
    mount_root: Optional[str] = typer.Option(
        None,
        "--mount-root",
        help="Directory under which binding secrets are mounted.",
    ),
    jobs: Optional[int] = typer.Option(
        None,
        "--jobs",
        "-j",
        min=1,
        help="Number of bindings to reconcile in parallel.",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Reconcile bindings directly against a cluster's API server."""

    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    settings = _settings(config, mount_root=mount_root, jobs=jobs, api_server=api_server, namespace=namespace)

    try:
        store = KubernetesStore.from_config(settings)
    except (RuntimeError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc

    with store:
        default_namespace = settings.namespace or "default"
        keys = [_parse_binding(value, default_namespace) for value in bindings or []]
        if not keys:
            try:
                keys = binding_keys(store.list(BINDING_API_VERSION, BINDING_KIND, settings.namespace))
            except FetchFailed as exc:
                raise typer.BadParameter(f"Could not list ServiceBindings: {exc}") from exc
        if not keys:
            typer.echo("No ServiceBinding objects found to reconcile.")
            return

        results = Reconciler(store, settings).reconcile_all(keys)

    _write_report(report, results)
    typer.echo(f"{_summary(results)} against {settings.api_server}")


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    app()

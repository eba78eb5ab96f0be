"""Check registration entry point for environment validation.

Every check is registered under ``component/check`` with a :class:`CheckKind`
that decides the depth at which it runs. Checks raise
:class:`ComponentMissing` when the object they inspect does not exist, which
the engine reports as ``warn``; this keeps validation usable against an
environment that is half built or already torn down.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

from ..environments import Layout, Phase
from ..providers.kubectl import KubectlError, KubectlProvider
from ..providers.terraform import TerraformError
from .models import (
    CheckDefinition,
    CheckKind,
    ComponentMissing,
    ValidationContext,
    ValidationDepth,
    ValidationResult,
    ValidationStatus,
)

DATABASE_IMAGE = "postgres:15"
DATABASE_FIELDS = ("host", "username", "database", "password")
SLOW_QUERY_MS = 2000
HOT_NODE_PERCENT = 90


class CheckRegistry:
    """Named check implementations, looked up by ``component/check``."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._checks: dict[str, CheckDefinition] = {}

    def register(
        self,
        component: str,
        check: str,
        kind: CheckKind,
        handler: Callable[[ValidationContext], ValidationResult],
    ) -> CheckDefinition:
        """Register *handler*; re-registering an id replaces it."""
        definition = CheckDefinition(component=component, check=check, kind=kind, run=handler)
        self._checks[definition.id] = definition
        return definition

    def get(self, check_id: str) -> CheckDefinition | None:
        """Return the check registered under *check_id*."""
        return self._checks.get(check_id)

    def components(self) -> list[str]:
        """Return components in registration order."""
        seen: dict[str, None] = {}
        for definition in self._checks.values():
            seen.setdefault(definition.component, None)
        return list(seen)

    def definitions(self) -> tuple[CheckDefinition, ...]:
        """Return all checks in registration order."""
        return tuple(self._checks.values())

    def __iter__(self) -> Iterator[CheckDefinition]:
        """Iterate over registered checks."""
        return iter(self._checks.values())

    def __len__(self) -> int:
        """Return the number of registered checks."""
        return len(self._checks)


def collect_checks() -> CheckRegistry:
    """Return the registry of built-in checks."""
    registry = CheckRegistry()
    _infrastructure_checks(registry)
    _cluster_checks(registry)
    _application_checks(registry)
    _database_checks(registry)
    _monitoring_checks(registry)
    _network_checks(registry)
    _security_checks(registry)
    return registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(
    status: ValidationStatus,
    message: str,
    detail: Mapping[str, Any] | None = None,
) -> ValidationResult:
    # component/check are filled in by the engine from the definition.
    return ValidationResult(component="", check="", status=status, message=message, detail=detail)


def _pass(message: str, **detail: Any) -> ValidationResult:
    return _result(ValidationStatus.PASS, message, detail or None)


def _warn(message: str, **detail: Any) -> ValidationResult:
    return _result(ValidationStatus.WARN, message, detail or None)


def _fail(message: str, **detail: Any) -> ValidationResult:
    return _result(ValidationStatus.FAIL, message, detail or None)


def _cluster(context: ValidationContext) -> KubectlProvider:
    if not context.kubeconfig.is_file():
        raise ComponentMissing(f"kubeconfig {context.kubeconfig} does not exist")
    return context.kubectl


def _require_namespace(kubectl: KubectlProvider, namespace: str) -> None:
    if not kubectl.exists("namespace", namespace):
        raise ComponentMissing(f"namespace '{namespace}'")


def _name(item: Mapping[str, Any]) -> str:
    metadata = item.get("metadata") or {}
    return str(metadata.get("name", "")) if isinstance(metadata, Mapping) else ""


def _pod_phase(item: Mapping[str, Any]) -> str:
    status = item.get("status") or {}
    return str(status.get("phase", "Unknown")) if isinstance(status, Mapping) else "Unknown"


def _condition(item: Mapping[str, Any], condition: str) -> bool:
    status = item.get("status") or {}
    conditions = status.get("conditions", []) if isinstance(status, Mapping) else []
    return any(
        isinstance(entry, Mapping)
        and entry.get("type") == condition
        and entry.get("status") == "True"
        for entry in conditions or []
    )


def _pods_running(
    kubectl: KubectlProvider,
    namespace: str,
    selector: str | None = None,
) -> tuple[list[str], list[str]]:
    running: list[str] = []
    other: list[str] = []
    for pod in kubectl.items("pods", namespace=namespace, selector=selector):
        phase = _pod_phase(pod)
        if phase in {"Running", "Succeeded"}:
            running.append(_name(pod))
        else:
            other.append(f"{_name(pod)}={phase}")
    return running, other


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


def _infrastructure_checks(registry: CheckRegistry) -> None:
    registry.register("infrastructure", "state", CheckKind.STANDARD, _check_infra_state)
    registry.register("infrastructure", "outputs", CheckKind.STANDARD, _check_infra_outputs)
    registry.register(
        "infrastructure", "application-state", CheckKind.STANDARD, _check_application_state
    )


def _phase_resources(context: ValidationContext, phase: Phase) -> list[str]:
    if context.workspace is None:
        raise ComponentMissing("environment configuration")
    try:
        return context.terraform.state_list(context.workspace.phase_dir(phase))
    except TerraformError as exc:
        raise ComponentMissing(f"{phase.value} state unavailable ({exc})") from exc


def _check_infra_state(context: ValidationContext) -> ValidationResult:
    resources = _phase_resources(context, Phase.INFRASTRUCTURE)
    if not resources:
        raise ComponentMissing("no resources in infrastructure state")
    return _pass(f"{len(resources)} resources in infrastructure state", resources=len(resources))


def _check_infra_outputs(context: ValidationContext) -> ValidationResult:
    if context.workspace is None:
        raise ComponentMissing("environment configuration")
    try:
        outputs = context.terraform.outputs(context.workspace.infrastructure_dir)
    except TerraformError as exc:
        raise ComponentMissing(f"infrastructure outputs unavailable ({exc})") from exc
    if not outputs:
        raise ComponentMissing("infrastructure outputs")
    missing = [name for name in context.config.cluster.required_outputs if not outputs.get(name)]
    if missing:
        return _fail(f"Missing required outputs: {', '.join(missing)}", missing=missing)
    return _pass("All required outputs present", outputs=sorted(outputs))


def _check_application_state(context: ValidationContext) -> ValidationResult:
    if context.workspace is not None and context.workspace.layout is Layout.LEGACY:
        return _pass("Legacy layout keeps application resources in a single state")
    resources = _phase_resources(context, Phase.APPLICATION)
    if not resources:
        raise ComponentMissing("no resources in application state")
    return _pass(f"{len(resources)} resources in application state", resources=len(resources))


# ---------------------------------------------------------------------------
# Cluster
# ---------------------------------------------------------------------------


def _cluster_checks(registry: CheckRegistry) -> None:
    registry.register("cluster", "connectivity", CheckKind.CONNECTIVITY, _check_connectivity)
    registry.register("cluster", "running-pods", CheckKind.CONNECTIVITY, _check_running_pods)
    registry.register("cluster", "kubeconfig", CheckKind.STANDARD, _check_kubeconfig)
    registry.register("cluster", "nodes", CheckKind.STANDARD, _check_nodes)
    registry.register("cluster", "system-pods", CheckKind.STANDARD, _check_system_pods)
    registry.register("cluster", "storage", CheckKind.STANDARD, _check_storage)
    registry.register("cluster", "metrics", CheckKind.MEASUREMENT, _check_node_metrics)


def _check_connectivity(context: ValidationContext) -> ValidationResult:
    if not context.kubeconfig.is_file():
        message = f"kubeconfig not found at {context.kubeconfig}"
        # A quick run is a reachability probe, so absence is a hard failure there.
        if context.options.depth is ValidationDepth.QUICK:
            return _fail(message)
        return _warn(message)
    if not context.kubectl.cluster_reachable():
        return _fail("Cluster control plane is not reachable")
    return _pass("Cluster control plane is reachable")


def _check_running_pods(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    running, other = _pods_running(kubectl, namespace)
    if not running and not other:
        return _warn(f"No pods in namespace '{namespace}'")
    if other:
        return _warn(f"{len(other)} pods not running", pods=other, running=len(running))
    return _pass(f"{len(running)} pods running in '{namespace}'")


def _check_kubeconfig(context: ValidationContext) -> ValidationResult:
    path = context.kubeconfig
    if not path.is_file():
        raise ComponentMissing(f"kubeconfig {path}")
    mode = path.stat().st_mode & 0o777
    if mode & 0o077:
        return _warn(f"kubeconfig {path} is readable by other users", mode=oct(mode))
    return _pass(f"kubeconfig present at {path}")


def _check_nodes(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    nodes = kubectl.items("nodes")
    if not nodes:
        return _fail("Cluster has no nodes")
    not_ready = [_name(node) for node in nodes if not _condition(node, "Ready")]
    if len(not_ready) == len(nodes):
        return _fail("No node is Ready", nodes=not_ready)
    if not_ready:
        return _warn(f"{len(not_ready)} of {len(nodes)} nodes not Ready", nodes=not_ready)
    return _pass(f"{len(nodes)} nodes Ready")


def _check_system_pods(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    running, other = _pods_running(kubectl, "kube-system")
    if other:
        return _warn(f"{len(other)} system pods unhealthy", pods=other)
    return _pass(f"{len(running)} system pods healthy")


def _check_storage(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    classes = kubectl.names("storageclass")
    required = list(context.config.cluster.required_storage_classes)
    missing = [name for name in required if name not in classes]
    if missing:
        return _fail(f"Missing storage classes: {', '.join(missing)}", available=classes)
    if not classes:
        return _warn("No storage classes defined")
    return _pass(f"{len(classes)} storage classes available", classes=classes)


def _check_node_metrics(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    hot: list[str] = []
    measured = 0
    for line in kubectl.top_nodes().splitlines():
        fields = line.split()
        if len(fields) < 5:
            continue
        measured += 1
        cpu = int(fields[2].rstrip("%") or 0)
        memory = int(fields[4].rstrip("%") or 0)
        if cpu >= HOT_NODE_PERCENT or memory >= HOT_NODE_PERCENT:
            hot.append(f"{fields[0]} cpu={cpu}% memory={memory}%")
    if not measured:
        return _warn("Node metrics unavailable")
    if hot:
        return _warn(f"{len(hot)} nodes above {HOT_NODE_PERCENT}% utilisation", nodes=hot)
    return _pass(f"{measured} nodes below {HOT_NODE_PERCENT}% utilisation")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def _application_checks(registry: CheckRegistry) -> None:
    registry.register("application", "namespace", CheckKind.STANDARD, _check_app_namespace)
    registry.register("application", "pods", CheckKind.STANDARD, _check_app_deployment)
    registry.register("application", "service", CheckKind.STANDARD, _check_app_service)
    registry.register("application", "web-access", CheckKind.STANDARD, _check_app_ingress)


def _check_app_namespace(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    return _pass(f"Namespace '{namespace}' exists")


def _check_app_deployment(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    cluster = context.config.cluster
    _require_namespace(kubectl, cluster.application_namespace)
    try:
        deployment = kubectl.get(
            "deployment", cluster.application_deployment, namespace=cluster.application_namespace
        )
    except KubectlError as exc:
        return _fail(f"Deployment '{cluster.application_deployment}' not found", error=str(exc))
    status = deployment.get("status") or {}
    available = int(status.get("availableReplicas", 0) or 0) if isinstance(status, Mapping) else 0
    desired = int(status.get("replicas", 0) or 0) if isinstance(status, Mapping) else 0
    if available == 0:
        return _fail("Application has no available replicas", desired=desired)
    if available < desired:
        return _warn(f"{available}/{desired} replicas available")
    return _pass(f"{available}/{desired} replicas available")


def _check_app_service(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    cluster = context.config.cluster
    _require_namespace(kubectl, cluster.application_namespace)
    if kubectl.exists(
        "service", cluster.application_deployment, namespace=cluster.application_namespace
    ):
        return _pass(f"Service '{cluster.application_deployment}' exists")
    return _fail(f"Service '{cluster.application_deployment}' not found")


def _ingress_hosts(item: Mapping[str, Any]) -> list[str]:
    spec = item.get("spec") or {}
    rules = spec.get("rules", []) if isinstance(spec, Mapping) else []
    return [
        str(rule.get("host"))
        for rule in rules or []
        if isinstance(rule, Mapping) and rule.get("host")
    ]


def _ingress_addresses(item: Mapping[str, Any]) -> list[str]:
    status = item.get("status") or {}
    balancer = status.get("loadBalancer", {}) if isinstance(status, Mapping) else {}
    entries = balancer.get("ingress", []) if isinstance(balancer, Mapping) else []
    return [
        str(entry.get("ip") or entry.get("hostname"))
        for entry in entries or []
        if isinstance(entry, Mapping) and (entry.get("ip") or entry.get("hostname"))
    ]


def _check_app_ingress(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    ingresses = kubectl.items("ingress", namespace=namespace)
    if not ingresses:
        return _warn("No ingress exposes the application")
    hosts = [host for item in ingresses for host in _ingress_hosts(item)]
    addresses = [address for item in ingresses for address in _ingress_addresses(item)]
    if not addresses:
        return _warn("Ingress has no external address yet", hosts=hosts)
    return _pass(f"Application exposed at {', '.join(hosts) or addresses[0]}", addresses=addresses)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


def _database_checks(registry: CheckRegistry) -> None:
    registry.register("database", "secret", CheckKind.STANDARD, _check_db_secret)
    registry.register("database", "credentials", CheckKind.STANDARD, _check_db_credentials)
    registry.register("database", "connectivity", CheckKind.STANDARD, _check_db_connectivity)
    registry.register("database", "query-latency", CheckKind.MEASUREMENT, _check_db_latency)


def find_database_secret(
    kubectl: KubectlProvider,
    namespace: str,
    candidates: Sequence[str],
) -> str | None:
    """Return the first existing secret among *candidates*."""
    for name in candidates:
        if kubectl.exists("secret", name, namespace=namespace):
            return name
    return None


def _database_credentials(context: ValidationContext) -> dict[str, str]:
    kubectl = _cluster(context)
    cluster = context.config.cluster
    _require_namespace(kubectl, cluster.application_namespace)
    secret = find_database_secret(
        kubectl, cluster.application_namespace, cluster.database_secrets
    )
    if secret is None:
        raise ComponentMissing("database secret")
    values = kubectl.secret_values(secret, namespace=cluster.application_namespace)
    missing = [field for field in DATABASE_FIELDS if not values.get(field)]
    if missing:
        raise ValueError(f"database secret '{secret}' lacks {', '.join(missing)}")
    return values


def _check_db_secret(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    cluster = context.config.cluster
    _require_namespace(kubectl, cluster.application_namespace)
    secret = find_database_secret(
        kubectl, cluster.application_namespace, cluster.database_secrets
    )
    if secret is None:
        return _fail(
            "No database secret found", candidates=list(cluster.database_secrets)
        )
    return _pass(f"Database secret '{secret}' present")


def _check_db_credentials(context: ValidationContext) -> ValidationResult:
    try:
        values = _database_credentials(context)
    except ValueError as exc:
        return _fail(str(exc))
    return _pass("Database credentials complete", host=values["host"])


def _psql(context: ValidationContext, name: str, argv: Sequence[str]) -> tuple[bool, str, int]:
    values = _database_credentials(context)
    start = time.perf_counter()
    result = context.kubectl.run_pod(
        f"{name}-{int(time.time())}",
        image=DATABASE_IMAGE,
        namespace=context.config.cluster.application_namespace,
        command=[
            *argv,
            "-h",
            values["host"],
            "-U",
            values["username"],
            "-d",
            values["database"],
        ],
        env={"PGPASSWORD": values["password"]},
        timeout=context.config.timeouts.kubectl,
    )
    return result.ok, result.message(), int((time.perf_counter() - start) * 1000)


def _check_db_connectivity(context: ValidationContext) -> ValidationResult:
    ok, message, _ = _psql(context, "db-ready", ["pg_isready"])
    if not ok:
        return _fail("Database is not accepting connections", output=message)
    return _pass("Database is accepting connections")


def _check_db_latency(context: ValidationContext) -> ValidationResult:
    ok, message, elapsed = _psql(context, "db-latency", ["psql", "-tAc", "SELECT 1"])
    if not ok:
        return _fail("Synthetic query failed", output=message)
    if elapsed > SLOW_QUERY_MS:
        return _warn(f"Synthetic query took {elapsed} ms", elapsed_ms=elapsed)
    return _pass(f"Synthetic query took {elapsed} ms", elapsed_ms=elapsed)


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def _monitoring_checks(registry: CheckRegistry) -> None:
    registry.register("monitoring", "namespace", CheckKind.STANDARD, _check_monitoring_namespace)
    registry.register(
        "monitoring", "prometheus", CheckKind.STANDARD, _monitoring_app_check("prometheus")
    )
    registry.register("monitoring", "grafana", CheckKind.STANDARD, _monitoring_app_check("grafana"))


def _check_monitoring_namespace(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.monitoring_namespace
    _require_namespace(kubectl, namespace)
    return _pass(f"Namespace '{namespace}' exists")


def _monitoring_app_check(app: str) -> Callable[[ValidationContext], ValidationResult]:
    def _check(context: ValidationContext) -> ValidationResult:
        kubectl = _cluster(context)
        namespace = context.config.cluster.monitoring_namespace
        _require_namespace(kubectl, namespace)
        running, other = _pods_running(
            kubectl, namespace, selector=f"app.kubernetes.io/name={app}"
        )
        if not running and not other:
            raise ComponentMissing(f"{app} pods")
        if not running:
            return _fail(f"{app} is not running", pods=other)
        if other:
            return _warn(f"{app} partially running", pods=other)
        return _pass(f"{app} running ({len(running)} pods)")

    return _check


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


def _network_checks(registry: CheckRegistry) -> None:
    registry.register("network", "ingress", CheckKind.STANDARD, _check_ingress_controller)
    registry.register("network", "services", CheckKind.STANDARD, _check_load_balancers)
    registry.register("network", "certificates", CheckKind.STANDARD, _check_certificates)


def _check_ingress_controller(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    classes = kubectl.names("ingressclass")
    if not classes:
        return _warn("No ingress class installed")
    return _pass(f"Ingress classes: {', '.join(classes)}", classes=classes)


def _check_load_balancers(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    pending: list[str] = []
    total = 0
    for service in kubectl.items("services", all_namespaces=True):
        spec = service.get("spec") or {}
        if not isinstance(spec, Mapping) or spec.get("type") != "LoadBalancer":
            continue
        total += 1
        if not _ingress_addresses(service):
            pending.append(_name(service))
    if pending:
        return _warn(f"{len(pending)} load balancers without an address", services=pending)
    return _pass(f"{total} load balancers have addresses")


def _check_certificates(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    try:
        certificates = kubectl.items("certificates.cert-manager.io", namespace=namespace)
    except KubectlError as exc:
        raise ComponentMissing("certificate manager") from exc
    if not certificates:
        return _warn("No certificates issued")
    not_ready = [_name(item) for item in certificates if not _condition(item, "Ready")]
    if not_ready:
        return _warn(f"{len(not_ready)} certificates not ready", certificates=not_ready)
    return _pass(f"{len(certificates)} certificates ready")


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------


def _security_checks(registry: CheckRegistry) -> None:
    registry.register("security", "network-policies", CheckKind.STANDARD, _check_network_policies)
    registry.register(
        "security", "privileged-containers", CheckKind.STANDARD, _check_privileged_containers
    )
    registry.register(
        "security", "service-account-tokens", CheckKind.STANDARD, _check_service_account_tokens
    )


def _check_network_policies(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    policies = kubectl.names("networkpolicy", namespace=namespace)
    if not policies:
        return _warn(f"No network policies in '{namespace}'")
    return _pass(f"{len(policies)} network policies in '{namespace}'", policies=policies)


_SYSTEM_NAMESPACES = re.compile(r"^(kube-.*|monitoring)$")


def _check_privileged_containers(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    privileged: list[str] = []
    for pod in kubectl.items("pods", all_namespaces=True):
        metadata = pod.get("metadata") or {}
        namespace = str(metadata.get("namespace", "")) if isinstance(metadata, Mapping) else ""
        if _SYSTEM_NAMESPACES.match(namespace):
            continue
        spec = pod.get("spec") or {}
        containers = spec.get("containers", []) if isinstance(spec, Mapping) else []
        for container in containers or []:
            security = container.get("securityContext") or {}
            if isinstance(security, Mapping) and security.get("privileged"):
                privileged.append(f"{namespace}/{_name(pod)}:{container.get('name')}")
    if privileged:
        return _warn(f"{len(privileged)} privileged containers", containers=privileged)
    return _pass("No privileged workload containers")


def _check_service_account_tokens(context: ValidationContext) -> ValidationResult:
    kubectl = _cluster(context)
    namespace = context.config.cluster.application_namespace
    _require_namespace(kubectl, namespace)
    account = kubectl.get("serviceaccount", "default", namespace=namespace)
    if account.get("automountServiceAccountToken") is False:
        return _pass("Default service account does not automount tokens")
    return _warn("Default service account automounts API tokens")


__all__ = ["CheckRegistry", "collect_checks", "find_database_secret"]

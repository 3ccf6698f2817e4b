"""
Ingress Component Routes RBAC Controller for Kubernetes

This controller grants the operators that consume a customized component route
read access to the serving certificate secret a cluster-admin configured for it.

The cluster Ingress config carries two independent lists:
- spec.componentRoutes: routes the cluster-admin customized (hostname, secret)
- status.componentRoutes: routes participating operators report, with the
  users that consume them

For every route present in both lists the controller keeps exactly one Role
(get/list/watch on the one secret) and one RoleBinding (the consuming users)
in the secret namespace. Derived objects are labeled with a hash of the
route's namespace/name and are garbage collected once the route drops out of
either list.

Features:
- Hash-keyed intersection of desired and observed routes
- Idempotent create/update with self-healing of duplicate objects
- Label-based garbage collection across the secret namespace
- Watch-driven work queue with per-key exponential backoff
- Structured logging with severity levels
- Dry-run mode support
- Prometheus metrics exposure
"""

import os
import sys
import time
import yaml
import hashlib
import logging
import threading
from collections import deque
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field, asdict

# ANSI color codes
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("ingress-routes-controller")


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Controller configuration loaded from environment variables"""

    # Parent resource (cluster scoped Ingress config)
    INGRESS_GROUP = os.getenv("INGRESS_GROUP", "config.openshift.io")
    INGRESS_VERSION = os.getenv("INGRESS_VERSION", "v1")
    INGRESS_PLURAL = os.getenv("INGRESS_PLURAL", "ingresses")
    INGRESS_KIND = "Ingress"
    INGRESS_NAME = os.getenv("INGRESS_NAME", "cluster")

    # Derived objects
    SECRET_NAMESPACE = os.getenv("SECRET_NAMESPACE", "openshift-config")
    COMPONENT_ROUTE_HASH_LABEL = "ingress.operator.openshift.io/componentroutehash"
    ROLE_NAME_MODE = os.getenv("ROLE_NAME_MODE", "generate").lower()
    ROLE_NAME_PREFIX = os.getenv("ROLE_NAME_PREFIX", "componentroute-")

    # Controller settings
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    WORKERS = int(os.getenv("WORKERS", "1"))
    WATCH_TIMEOUT = int(os.getenv("WATCH_TIMEOUT", "300"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))
    RETRY_BACKOFF_MAX = float(os.getenv("RETRY_BACKOFF_MAX", "300"))

    # Access granted on the serving certificate secret
    SECRET_VERBS = ["get", "list", "watch"]
    RBAC_API_GROUP = "rbac.authorization.k8s.io"


# ============================================================================
# ERRORS
# ============================================================================

class LabelIntegrityError(Exception):
    """A derived object matched the marker label query but carries no hash value"""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(
            f"{kind} {namespace}/{name} matched label {Config.COMPONENT_ROUTE_HASH_LABEL} "
            f"but has no value for it"
        )


# ============================================================================
# STABLE KEYS
# ============================================================================

def hash_key(value: str) -> str:
    """
    Derive a short, stable correlation key from a logical identity

    The result is a label-safe hex string; equal inputs always give equal output.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]


def component_route_hash(namespace: str, name: str) -> str:
    return hash_key(f"{namespace}/{name}")


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class ComponentRouteSpec:
    """Component route customization from Ingress spec"""
    namespace: str
    name: str
    hostname: str = ""
    serving_secret_name: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ComponentRouteSpec":
        secret_ref = data.get("servingCertKeyPairSecret") or {}
        return cls(
            namespace=data.get("namespace", ""),
            name=data.get("name", ""),
            hostname=data.get("hostname", ""),
            serving_secret_name=secret_ref.get("name", ""),
        )

    @property
    def key_hash(self) -> str:
        return component_route_hash(self.namespace, self.name)


@dataclass
class ComponentRouteStatus:
    """Component route state reported by a consuming operator in Ingress status"""
    namespace: str
    name: str
    default_hostname: str = ""
    current_hostnames: List[str] = field(default_factory=list)
    consuming_users: List[str] = field(default_factory=list)
    conditions: List[dict] = field(default_factory=list)
    related_objects: List[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ComponentRouteStatus":
        return cls(
            namespace=data.get("namespace", ""),
            name=data.get("name", ""),
            default_hostname=data.get("defaultHostname", ""),
            current_hostnames=list(data.get("currentHostnames") or []),
            consuming_users=list(data.get("consumingUsers") or []),
            conditions=list(data.get("conditions") or []),
            related_objects=list(data.get("relatedObjects") or []),
        )

    @property
    def key_hash(self) -> str:
        return component_route_hash(self.namespace, self.name)


@dataclass
class ReconciliationTarget:
    """A component route present in both spec and status"""
    logical_key: str
    correlation_hash: str
    namespace: str
    name: str
    serving_secret_name: str
    consuming_users: List[str]


@dataclass
class ReconcileResult:
    """Outcome handed back to the trigger source"""
    requeue: bool = False
    error: Optional[Exception] = None


@dataclass
class ReconciliationStats:
    """Statistics for a reconciliation cycle"""
    targets: Optional[int] = None
    roles_created: int = 0
    roles_updated: int = 0
    role_bindings_created: int = 0
    role_bindings_updated: int = 0
    duplicates_deleted: int = 0
    stale_deleted: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def changes(self) -> int:
        return (self.roles_created + self.roles_updated + self.role_bindings_created
                + self.role_bindings_updated + self.duplicates_deleted + self.stale_deleted)

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


# ============================================================================
# METRICS (Prometheus-compatible)
# ============================================================================

class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self):
        self._lock = threading.Lock()
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.changes_count = 0
        self.targets_managed = 0
        self.error_count = 0
        self.label_integrity_errors = 0
        self.last_error_timestamp = 0

    def record_reconciliation(self, stats: ReconciliationStats):
        """Record metrics from a reconciliation cycle"""
        with self._lock:
            self.reconciliation_count += 1
            self.last_reconciliation_timestamp = time.time()
            self.changes_count += stats.changes()
            if stats.targets is not None:
                self.targets_managed = stats.targets
            self.error_count += stats.errors
            if stats.errors > 0:
                self.last_error_timestamp = time.time()

    def record_label_integrity_error(self):
        with self._lock:
            self.label_integrity_errors += 1

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        return f"""# HELP ingress_routes_controller_reconciliations_total Total number of reconciliation cycles
# TYPE ingress_routes_controller_reconciliations_total counter
ingress_routes_controller_reconciliations_total {self.reconciliation_count}

# HELP ingress_routes_controller_last_reconciliation_timestamp Timestamp of last reconciliation
# TYPE ingress_routes_controller_last_reconciliation_timestamp gauge
ingress_routes_controller_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP ingress_routes_controller_changes_total Total derived object writes
# TYPE ingress_routes_controller_changes_total counter
ingress_routes_controller_changes_total {self.changes_count}

# HELP ingress_routes_controller_targets_managed Component routes with derived RBAC
# TYPE ingress_routes_controller_targets_managed gauge
ingress_routes_controller_targets_managed {self.targets_managed}

# HELP ingress_routes_controller_errors_total Total errors encountered
# TYPE ingress_routes_controller_errors_total counter
ingress_routes_controller_errors_total {self.error_count}

# HELP ingress_routes_controller_label_integrity_errors_total Derived objects found without a hash label value
# TYPE ingress_routes_controller_label_integrity_errors_total counter
ingress_routes_controller_label_integrity_errors_total {self.label_integrity_errors}

# HELP ingress_routes_controller_last_error_timestamp Timestamp of last error
# TYPE ingress_routes_controller_last_error_timestamp gauge
ingress_routes_controller_last_error_timestamp {self.last_error_timestamp}
"""


# ============================================================================
# KUBERNETES CLIENT
# ============================================================================

class KubernetesClient:
    """
    Handles all Kubernetes API interactions

    Objects are passed in and out as plain dictionaries in API (camelCase) form.
    Errors are raised as ApiException; callers decide which statuses are benign.
    """

    def __init__(self, dry_run: bool = False):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.api_client = client.ApiClient()
        self.custom = client.CustomObjectsApi(self.api_client)
        self.rbac = client.RbacAuthorizationV1Api(self.api_client)
        self.dry_run = dry_run

    def _to_dict(self, obj) -> dict:
        return self.api_client.sanitize_for_serialization(obj)

    def get_ingress(self, name: str) -> dict:
        return self.custom.get_cluster_custom_object(
            group=Config.INGRESS_GROUP,
            version=Config.INGRESS_VERSION,
            plural=Config.INGRESS_PLURAL,
            name=name,
        )

    def list_roles(self, namespace: str, label_selector: str) -> List[dict]:
        result = self.rbac.list_namespaced_role(namespace, label_selector=label_selector)
        return [self._to_dict(item) for item in result.items]

    def list_role_bindings(self, namespace: str, label_selector: str) -> List[dict]:
        result = self.rbac.list_namespaced_role_binding(namespace, label_selector=label_selector)
        return [self._to_dict(item) for item in result.items]

    def create_role(self, namespace: str, body: dict) -> dict:
        if self.dry_run:
            return self._dry_run_create("Role", body)
        return self._to_dict(self.rbac.create_namespaced_role(namespace, body))

    def create_role_binding(self, namespace: str, body: dict) -> dict:
        if self.dry_run:
            return self._dry_run_create("RoleBinding", body)
        return self._to_dict(self.rbac.create_namespaced_role_binding(namespace, body))

    def replace_role(self, body: dict) -> dict:
        meta = body["metadata"]
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would update Role {meta['namespace']}/{meta['name']}:\n{yaml.safe_dump(body)}")
            return body
        return self._to_dict(self.rbac.replace_namespaced_role(meta["name"], meta["namespace"], body))

    def replace_role_binding(self, body: dict) -> dict:
        meta = body["metadata"]
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would update RoleBinding {meta['namespace']}/{meta['name']}:\n{yaml.safe_dump(body)}")
            return body
        return self._to_dict(self.rbac.replace_namespaced_role_binding(meta["name"], meta["namespace"], body))

    def delete_role(self, namespace: str, name: str):
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would delete Role {namespace}/{name}")
            return
        self.rbac.delete_namespaced_role(name, namespace)

    def delete_role_binding(self, namespace: str, name: str):
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would delete RoleBinding {namespace}/{name}")
            return
        self.rbac.delete_namespaced_role_binding(name, namespace)

    def _dry_run_create(self, kind: str, body: dict) -> dict:
        logger.info(f"[DRY-RUN] Would create {kind}:\n{yaml.safe_dump(body)}")
        meta = dict(body["metadata"])
        meta.setdefault("name", meta.get("generateName", "") + "dry-run")
        return {**body, "metadata": meta}


# ============================================================================
# STATE INTERSECTION
# ============================================================================

def intersect_component_routes(spec_routes: Iterable[dict], status_routes: Iterable[dict]) -> List[ReconciliationTarget]:
    """
    Join desired and observed component routes on their namespace/name identity

    Args:
        spec_routes: Ingress spec.componentRoutes entries
        status_routes: Ingress status.componentRoutes entries

    Returns:
        Targets in spec order, one per identity present in both lists
    """
    observed: Dict[str, ComponentRouteStatus] = {}
    for raw in status_routes or []:
        route = ComponentRouteStatus.from_dict(raw)
        observed[route.key_hash] = route

    desired: Dict[str, ComponentRouteSpec] = {}
    for raw in spec_routes or []:
        route = ComponentRouteSpec.from_dict(raw)
        desired[route.key_hash] = route

    targets = []
    for key_hash, spec in desired.items():
        status = observed.get(key_hash)
        if status is None:
            continue
        targets.append(ReconciliationTarget(
            logical_key=f"{spec.namespace}/{spec.name}",
            correlation_hash=key_hash,
            namespace=spec.namespace,
            name=spec.name,
            serving_secret_name=spec.serving_secret_name,
            consuming_users=list(status.consuming_users),
        ))
    return targets


def _object_name(obj: dict) -> str:
    return obj["metadata"]["name"]


def _is_not_found(e: ApiException) -> bool:
    return e.status == 404


def _normalized(items: Optional[List[dict]]) -> List[dict]:
    # the API server omits empty fields, compare without them
    return [{k: v for k, v in item.items() if v not in (None, "")} for item in items or []]


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class IngressRoutesController:
    """
    Reconciles the Roles and RoleBindings derived from Ingress component routes
    """

    def __init__(self, k8s_client=None, metrics: Optional[Metrics] = None,
                 namespace: Optional[str] = None, name_mode: Optional[str] = None):
        self.k8s_client = k8s_client or KubernetesClient(dry_run=Config.DRY_RUN)
        self.metrics = metrics or Metrics()
        self.namespace = namespace or Config.SECRET_NAMESPACE
        self.name_mode = name_mode or Config.ROLE_NAME_MODE
        if self.name_mode not in ("generate", "logical"):
            raise ValueError(f"Unsupported ROLE_NAME_MODE {self.name_mode!r}")
        logger.info("Ingress routes controller initialized")

    # ------------------------------------------------------------------
    # Desired objects
    # ------------------------------------------------------------------

    def _metadata(self, target: ReconciliationTarget, owner: Optional[dict]) -> dict:
        metadata = {
            "namespace": self.namespace,
            "labels": {Config.COMPONENT_ROUTE_HASH_LABEL: target.correlation_hash},
        }
        if owner is not None:
            metadata["ownerReferences"] = [owner]
        return metadata

    def desired_rules(self, target: ReconciliationTarget) -> List[dict]:
        return [{
            "apiGroups": [""],
            "resources": ["secrets"],
            "resourceNames": [target.serving_secret_name],
            "verbs": list(Config.SECRET_VERBS),
        }]

    def desired_role(self, target: ReconciliationTarget, owner: Optional[dict] = None) -> dict:
        metadata = self._metadata(target, owner)
        if self.name_mode == "logical":
            metadata["name"] = target.name
        else:
            metadata["generateName"] = Config.ROLE_NAME_PREFIX
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "Role",
            "metadata": metadata,
            "rules": self.desired_rules(target),
        }

    @staticmethod
    def subject_for_user(user: str) -> dict:
        """Build a ServiceAccount subject named exactly as the consuming user"""
        return {"kind": "ServiceAccount", "name": user}

    def desired_subjects(self, target: ReconciliationTarget) -> List[dict]:
        return [self.subject_for_user(user) for user in target.consuming_users]

    @staticmethod
    def role_ref(role_name: str) -> dict:
        return {"apiGroup": Config.RBAC_API_GROUP, "kind": "Role", "name": role_name}

    def desired_role_binding(self, target: ReconciliationTarget, role_name: str,
                             owner: Optional[dict] = None) -> dict:
        metadata = self._metadata(target, owner)
        metadata["name"] = role_name
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": metadata,
            "subjects": self.desired_subjects(target),
            "roleRef": self.role_ref(role_name),
        }

    @staticmethod
    def owner_reference(ingress: dict) -> Optional[dict]:
        """Owner reference to the Ingress, or None when its uid is unknown"""
        metadata = ingress.get("metadata") or {}
        if not metadata.get("uid"):
            return None
        return {
            "apiVersion": f"{Config.INGRESS_GROUP}/{Config.INGRESS_VERSION}",
            "kind": Config.INGRESS_KIND,
            "name": metadata.get("name", ""),
            "uid": metadata["uid"],
        }

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def _selector(self, target: ReconciliationTarget) -> str:
        return f"{Config.COMPONENT_ROUTE_HASH_LABEL}={target.correlation_hash}"

    def _delete_duplicates(self, kind: str, duplicates: List[dict], delete: Callable[[str, str], None],
                           stats: ReconciliationStats):
        for duplicate in duplicates:
            name = _object_name(duplicate)
            try:
                delete(self.namespace, name)
                logger.info(f"{YELLOW}Deleted duplicate {kind}: {self.namespace}/{name}{RESET}")
            except ApiException as e:
                if not _is_not_found(e):
                    raise
                logger.debug(f"Duplicate {kind} {self.namespace}/{name} already deleted")
            stats.duplicates_deleted += 1

    def ensure_role(self, target: ReconciliationTarget, stats: ReconciliationStats,
                    owner: Optional[dict] = None) -> dict:
        """
        Ensure exactly one Role grants read access on the target's secret

        Args:
            target: Component route to converge
            stats: Statistics object to update
            owner: Optional owner reference for newly created objects

        Returns:
            The canonical Role, whose name the RoleBinding must reference
        """
        selector = self._selector(target)
        roles = self.k8s_client.list_roles(self.namespace, selector)

        if not roles:
            try:
                role = self.k8s_client.create_role(self.namespace, self.desired_role(target, owner))
                stats.roles_created += 1
                logger.info(f"{WHITE}Created role {self.namespace}/{_object_name(role)} "
                            f"for component route {target.logical_key}{RESET}")
                return role
            except ApiException as e:
                if e.status != 409:
                    raise
                logger.info(f"Role for component route {target.logical_key} already exists, updating it")
                roles = self.k8s_client.list_roles(self.namespace, selector)
                if not roles:
                    raise

        role, duplicates = roles[0], roles[1:]
        self._delete_duplicates("role", duplicates, self.k8s_client.delete_role, stats)

        rules = self.desired_rules(target)
        if _normalized(role.get("rules")) != _normalized(rules):
            role["rules"] = rules
            role = self.k8s_client.replace_role(role)
            stats.roles_updated += 1
            logger.info(f"{WHITE}Updated role {self.namespace}/{_object_name(role)} "
                        f"to secret {target.serving_secret_name}{RESET}")
        else:
            logger.debug(f"Role {self.namespace}/{_object_name(role)} is up to date")
        return role

    def ensure_role_binding(self, target: ReconciliationTarget, role: dict, stats: ReconciliationStats,
                            owner: Optional[dict] = None) -> dict:
        """
        Ensure exactly one RoleBinding binds the target's consuming users to its Role

        Args:
            target: Component route to converge
            role: Canonical Role returned by ensure_role
            stats: Statistics object to update
            owner: Optional owner reference for newly created objects

        Returns:
            The canonical RoleBinding
        """
        role_name = _object_name(role)
        selector = self._selector(target)
        bindings = self.k8s_client.list_role_bindings(self.namespace, selector)

        if bindings:
            binding, duplicates = bindings[0], bindings[1:]
            self._delete_duplicates("role binding", duplicates, self.k8s_client.delete_role_binding, stats)

            # roleRef is immutable, a binding pointing elsewhere has to be recreated
            if binding.get("roleRef") != self.role_ref(role_name):
                name = _object_name(binding)
                try:
                    self.k8s_client.delete_role_binding(self.namespace, name)
                except ApiException as e:
                    if not _is_not_found(e):
                        raise
                stats.stale_deleted += 1
                logger.info(f"{YELLOW}Deleted role binding {self.namespace}/{name} "
                            f"referencing another role{RESET}")
                bindings = []

        if not bindings:
            try:
                binding = self.k8s_client.create_role_binding(
                    self.namespace, self.desired_role_binding(target, role_name, owner))
                stats.role_bindings_created += 1
                logger.info(f"{WHITE}Created role binding {self.namespace}/{_object_name(binding)} "
                            f"for users {target.consuming_users}{RESET}")
                return binding
            except ApiException as e:
                if e.status != 409:
                    raise
                logger.info(f"Role binding for component route {target.logical_key} already exists, updating it")
                bindings = self.k8s_client.list_role_bindings(self.namespace, selector)
                if not bindings:
                    raise
                binding = bindings[0]
                self._delete_duplicates("role binding", bindings[1:], self.k8s_client.delete_role_binding, stats)

        subjects = self.desired_subjects(target)
        if _normalized(binding.get("subjects")) != _normalized(subjects):
            binding["subjects"] = subjects
            binding = self.k8s_client.replace_role_binding(binding)
            stats.role_bindings_updated += 1
            logger.info(f"{WHITE}Updated role binding {self.namespace}/{_object_name(binding)} "
                        f"to users {target.consuming_users}{RESET}")
        else:
            logger.debug(f"Role binding {self.namespace}/{_object_name(binding)} is up to date")
        return binding

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def collect_garbage(self, active_hashes: Set[str], stats: ReconciliationStats):
        """
        Delete every labeled Role and RoleBinding whose hash is no longer active

        Args:
            active_hashes: Correlation hashes of all current targets
            stats: Statistics object to update

        Raises:
            LabelIntegrityError: a listed object has no value for the marker label
        """
        label = Config.COMPONENT_ROUTE_HASH_LABEL
        kinds = [
            ("Role", self.k8s_client.list_roles, self.k8s_client.delete_role),
            ("RoleBinding", self.k8s_client.list_role_bindings, self.k8s_client.delete_role_binding),
        ]
        for kind, list_fn, delete_fn in kinds:
            for obj in list_fn(self.namespace, label):
                name = _object_name(obj)
                key_hash = (obj["metadata"].get("labels") or {}).get(label)
                if not key_hash:
                    raise LabelIntegrityError(kind, self.namespace, name)
                if key_hash in active_hashes:
                    continue
                try:
                    delete_fn(self.namespace, name)
                    logger.info(f"{YELLOW}Deleted stale {kind} {self.namespace}/{name}{RESET}")
                except ApiException as e:
                    if not _is_not_found(e):
                        raise
                    logger.debug(f"Stale {kind} {self.namespace}/{name} already deleted")
                stats.stale_deleted += 1

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _fetch_ingress(self, key: str) -> Optional[dict]:
        try:
            return self.k8s_client.get_ingress(key)
        except ApiException as e:
            if _is_not_found(e):
                return None
            raise

    def converge(self, ingress: dict, stats: ReconciliationStats) -> List[ReconciliationTarget]:
        spec = ingress.get("spec") or {}
        status = ingress.get("status") or {}
        targets = intersect_component_routes(spec.get("componentRoutes"), status.get("componentRoutes"))
        stats.targets = len(targets)
        owner = self.owner_reference(ingress)

        for target in targets:
            role = self.ensure_role(target, stats, owner)
            self.ensure_role_binding(target, role, stats, owner)

        self.collect_garbage({target.correlation_hash for target in targets}, stats)
        return targets

    def reconcile(self, key: str) -> ReconcileResult:
        """
        Reconcile derived RBAC for one Ingress

        Args:
            key: Name of the cluster scoped Ingress

        Returns:
            ReconcileResult asking for a requeue when any step failed
        """
        logger.info(f"Reconciling ingress {key}")
        stats = ReconciliationStats(start_time=datetime.now())
        result = ReconcileResult()

        try:
            ingress = self._fetch_ingress(key)
            if ingress is None:
                logger.info(f"Ingress {key} not found; reconciliation will be skipped")
            else:
                self.converge(ingress, stats)
        except ApiException as e:
            logger.error(f"Failed to reconcile ingress {key}: {e}")
            stats.errors += 1
            result = ReconcileResult(requeue=True, error=e)
        except LabelIntegrityError as e:
            logger.error(f"{RED}Label integrity fault while reconciling ingress {key}: {e}{RESET}")
            self.metrics.record_label_integrity_error()
            stats.errors += 1
            result = ReconcileResult(requeue=True, error=e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling ingress {key}: {e}", exc_info=True)
            stats.errors += 1
            result = ReconcileResult(requeue=True, error=e)

        stats.end_time = datetime.now()
        self.metrics.record_reconciliation(stats)
        logger.info(f"Reconciled ingress {key}: {stats.to_dict()}")
        return result


# ============================================================================
# WORK QUEUE
# ============================================================================

class WorkQueue:
    """
    De-duplicating key queue with per-key exclusivity and backoff

    A key handed out by get() is not handed out again until done() is called;
    adds that arrive meanwhile are replayed on done().
    """

    def __init__(self, backoff_base: Optional[float] = None, backoff_max: Optional[float] = None):
        self.backoff_base = backoff_base if backoff_base is not None else Config.RETRY_BACKOFF_BASE
        self.backoff_max = backoff_max if backoff_max is not None else Config.RETRY_BACKOFF_MAX
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: List[threading.Timer] = []
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def add(self, key: str):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return
        timer = threading.Timer(delay, self.add, args=(key,))
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block for the next key; None on shutdown or timeout"""
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout):
                return None
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def backoff(self, key: str) -> float:
        """Record a failure for key and return the delay before its next attempt"""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.backoff_base ** failures, self.backoff_max)

    def forget(self, key: str):
        with self._cond:
            self._failures.pop(key, None)

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            timers, self._timers = self._timers, []
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down


# ============================================================================
# MANAGER (watches and workers)
# ============================================================================

def owner_ingress_name(obj: dict) -> str:
    """Map a derived object back to the Ingress that owns it"""
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("kind") == Config.INGRESS_KIND and ref.get("apiVersion", "").startswith(Config.INGRESS_GROUP + "/"):
            return ref["name"]
    return Config.INGRESS_NAME


class ControllerManager:
    """
    Runs watches that feed the work queue and workers that drain it
    """

    def __init__(self, controller: IngressRoutesController, queue: Optional[WorkQueue] = None,
                 workers: Optional[int] = None):
        self.controller = controller
        self.queue = queue or WorkQueue()
        self.workers = workers or Config.WORKERS
        self.stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one key from the queue

        Returns:
            False when the queue is shutting down or nothing arrived in time
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            result = self.controller.reconcile(key)
            if result.requeue:
                delay = self.queue.backoff(key)
                logger.warning(f"Requeueing ingress {key} in {delay:.1f}s: {result.error}")
                self.queue.add_after(key, delay)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self):
        while not self.stop_event.is_set():
            if not self.process_next(timeout=1.0) and self.queue.shutting_down:
                return

    def _watch(self, description: str, list_fn: Callable, to_key: Callable[[dict], Optional[str]], **kwargs):
        """List-then-watch loop that enqueues the key of every event"""
        backoff_seconds = 1.0
        resource_version = None
        api_client = self.controller.k8s_client.api_client

        while not self.stop_event.is_set():
            watcher = watch.Watch()
            try:
                if resource_version is None:
                    initial = list_fn(**kwargs)
                    initial = initial if isinstance(initial, dict) else api_client.sanitize_for_serialization(initial)
                    for item in initial.get("items") or []:
                        key = to_key(item)
                        if key:
                            self.queue.add(key)
                    resource_version = (initial.get("metadata") or {}).get("resourceVersion")
                    logger.info(f"Watching {description} from resourceVersion {resource_version}")

                for event in watcher.stream(list_fn, resource_version=resource_version,
                                            timeout_seconds=Config.WATCH_TIMEOUT, **kwargs):
                    if self.stop_event.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    obj = obj if isinstance(obj, dict) else api_client.sanitize_for_serialization(obj)
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
                    key = to_key(obj)
                    if key:
                        logger.debug(f"{event.get('type')} event on {description}, enqueueing ingress {key}")
                        self.queue.add(key)
                backoff_seconds = 1.0
            except ApiException as e:
                if e.status == 410:
                    logger.warning(f"Watch on {description} expired, re-listing")
                    resource_version = None
                    continue
                logger.error(f"Watch on {description} failed: {e}")
                self.stop_event.wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * Config.RETRY_BACKOFF_BASE, Config.RETRY_BACKOFF_MAX)
            except Exception as e:
                logger.error(f"Unexpected error watching {description}: {e}", exc_info=True)
                self.stop_event.wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * Config.RETRY_BACKOFF_BASE, Config.RETRY_BACKOFF_MAX)
            finally:
                watcher.stop()

    def _start(self, target: Callable, *args, **kwargs):
        thread = threading.Thread(target=target, args=args, kwargs=kwargs, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self):
        k8s = self.controller.k8s_client
        namespace = self.controller.namespace

        self._start(self._watch, "ingresses", k8s.custom.list_cluster_custom_object,
                    lambda obj: (obj.get("metadata") or {}).get("name"),
                    group=Config.INGRESS_GROUP, version=Config.INGRESS_VERSION, plural=Config.INGRESS_PLURAL)
        self._start(self._watch, "roles", k8s.rbac.list_namespaced_role, owner_ingress_name,
                    namespace=namespace, label_selector=Config.COMPONENT_ROUTE_HASH_LABEL)
        self._start(self._watch, "role bindings", k8s.rbac.list_namespaced_role_binding, owner_ingress_name,
                    namespace=namespace, label_selector=Config.COMPONENT_ROUTE_HASH_LABEL)
        for _ in range(self.workers):
            self._start(self._worker)

        logger.info(f"{GREEN}Controller started (DRY_RUN={Config.DRY_RUN}, workers={self.workers}, "
                    f"namespace={namespace}){RESET}")

    def run_forever(self):
        self.start()
        while not self.stop_event.wait(60):
            logger.debug(self.controller.metrics.export_prometheus())

    def stop(self):
        """Cleanup resources"""
        logger.info("Shutting down controller...")
        self.stop_event.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=5)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    manager = None
    try:
        manager = ControllerManager(IngressRoutesController())
        manager.run_forever()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if manager:
            manager.stop()


if __name__ == "__main__":
    main()

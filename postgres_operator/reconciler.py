"""
PostgresCluster reconciler

One call to Reconciler.reconcile converges every object a PostgresCluster
depends on:

    fetch -> default -> deletion -> reserved name -> ordered stages
          -> observed generation -> status patch

Stages run strictly in order because later ones consume what earlier ones
produced. The first failure ends the attempt; nothing is rolled back.
"""

import base64
import copy
import json
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from postgres_operator import instance, patroni, pgbackrest, pgbouncer, pki
from postgres_operator.config import GREEN, RESET, WHITE, YELLOW
from postgres_operator.context import Context
from postgres_operator.database import DatabaseClient
from postgres_operator.errors import ApiError
from postgres_operator.kube import EventRecorder, KubernetesClient, identity
from postgres_operator.models import (
    Cluster, PGBackRestStatus, PGBouncerStatus, status_changed,
)
from postgres_operator.naming import DEFAULT_NAMING, KIND, RESERVED_CLUSTER_NAME, NamingScheme
from postgres_operator.ownership import assign_owner, is_controlled_by
from postgres_operator.pipeline import Stage, run_pipeline
from postgres_operator.postgres import HBAs, Parameters, cluster_hbas, cluster_parameters
from postgres_operator.result import Result

logger = logging.getLogger("postgres-operator.reconciler")

PASSWORD_LENGTH = 24
PASSWORD_ALPHABET = string.ascii_letters + string.digits

# How long to wait for instance StatefulSets to go away during deletion
DELETION_RECHECK = 5.0
# How long to wait for a primary before creating the backup stanza
STANZA_RECHECK = 10.0

_UNSET = object()


@dataclass(frozen=True)
class Request:
    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ReconcileState:
    """Outputs of earlier stages consumed by later ones"""
    cluster: Cluster
    hbas: HBAs
    parameters: Parameters
    pguser: Optional[dict] = None
    config_map: Optional[dict] = None
    root_ca: Optional[pki.RootCertificateAuthority] = None
    pod_service: Optional[dict] = None
    leader_service: Optional[dict] = None
    cluster_certificate: Optional[dict] = None
    instances: List[str] = field(default_factory=list)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def encode(value) -> str:
    if isinstance(value, str):
        value = value.encode()
    return base64.b64encode(value).decode()


def decode(data: Optional[dict], key: str) -> str:
    value = (data or {}).get(key)
    return base64.b64decode(value).decode() if value else ""


class Reconciler:
    """
    Reconciles PostgresCluster objects

    Holds no state between attempts, so one instance serves every worker.
    """

    def __init__(self, client: KubernetesClient, recorder: EventRecorder,
                 names: NamingScheme = DEFAULT_NAMING,
                 pod_exec: Optional[Callable] = None,
                 database_factory: Callable[..., DatabaseClient] = DatabaseClient):
        self.client = client
        self.recorder = recorder
        self.names = names
        self.pod_exec = pod_exec
        self.database_factory = database_factory

    # ========================================================================
    # CONTROL LOOP
    # ========================================================================

    def reconcile(self, ctx: Context, request: Request) -> Tuple[Result, Optional[Exception]]:
        """
        Converge one PostgresCluster

        Args:
            ctx: Deadline and cancellation for this attempt
            request: namespace and name of the cluster

        Returns:
            The scheduling outcome and the error that ended the attempt, if any
        """
        try:
            obj = self.client.get(ctx, KIND, request.namespace, request.name)
        except Exception as e:
            logger.error(f"Unable to fetch PostgresCluster {request.key}: {e}")
            return Result(), e

        # Dependents of a deleted cluster keep sending events for a while
        if obj is None:
            logger.debug(f"PostgresCluster {request.key} not found")
            return Result(), None

        cluster = Cluster.from_dict(obj)
        cluster.default()
        before = copy.deepcopy(cluster.status)

        try:
            result = self.handle_delete(ctx, cluster, obj)
        except Exception as e:
            logger.error(f"Deleting {cluster.key}: {e}")
            return Result(), e
        if result is not None:
            logger.info(f"Deleting {cluster.key}: {result}")
            return result, None

        # An initial user and database are created with the cluster's name
        if cluster.name == RESERVED_CLUSTER_NAME:
            logger.warning(f"{YELLOW}Cluster name {cluster.name!r} is not allowed{RESET}")
            self.recorder.event(cluster.reference(), "Warning", "InvalidName",
                                f"{cluster.name!r} is not allowed")
            return Result(), None

        try:
            obj = self.ensure_finalizer(ctx, cluster, obj)
        except Exception as e:
            logger.error(f"Adding finalizer to {cluster.key}: {e}")
            return Result(), e

        state = ReconcileState(
            cluster=cluster,
            hbas=cluster_hbas(self.names, pgbouncer.postgresql_hbas(cluster, self.names)),
            parameters=cluster_parameters(self.names),
        )
        outcome = run_pipeline(ctx, cluster.key, self.stages(state))
        error = outcome.error

        if outcome.ok:
            cluster.status.observed_generation = cluster.generation

        if status_changed(before, cluster.status):
            try:
                self.client.patch_status(ctx, obj, {
                    "metadata": {"resourceVersion": cluster.resource_version},
                    "status": cluster.status.to_dict(),
                })
            except Exception as e:
                if error is None:
                    error = e
                else:
                    logger.error(f"Unable to update status of {cluster.key}: {e}")

        if error is not None:
            return Result(), error

        logger.info(f"{GREEN}Reconciled {cluster.key}{RESET} ({outcome.result})")
        return outcome.result, None

    def stages(self, state: ReconcileState) -> List[Stage]:
        """The fixed stage order; each stage reads what earlier stages stored in state"""
        return [
            Stage("patroni-status", lambda ctx: self.reconcile_patroni_status(ctx, state)),
            Stage("pguser-secret", lambda ctx: self.reconcile_pguser_secret(ctx, state)),
            Stage("cluster-configmap", lambda ctx: self.reconcile_cluster_config_map(ctx, state)),
            Stage("root-certificate", lambda ctx: self.reconcile_root_certificate(ctx, state)),
            Stage("pod-service", lambda ctx: self.reconcile_pod_service(ctx, state)),
            Stage("leader-service", lambda ctx: self.reconcile_leader_service(ctx, state)),
            Stage("primary-service", lambda ctx: self.reconcile_primary_service(ctx, state)),
            Stage("cluster-certificate", lambda ctx: self.reconcile_cluster_certificate(ctx, state)),
            Stage("patroni-distributed-configuration", lambda ctx: self.reconcile_distributed_configuration(ctx, state)),
            Stage("patroni-dynamic-configuration", lambda ctx: self.reconcile_dynamic_configuration(ctx, state)),
            Stage("instance-sets", lambda ctx: self.reconcile_instance_sets(ctx, state)),
            Stage("pgbackrest", lambda ctx: self.reconcile_pgbackrest(ctx, state)),
            Stage("pgbouncer", lambda ctx: self.reconcile_pgbouncer(ctx, state)),
        ]

    # ========================================================================
    # DELETION
    # ========================================================================

    def ensure_finalizer(self, ctx: Context, cluster: Cluster, obj: dict) -> dict:
        if self.names.finalizer in cluster.finalizers:
            return obj
        finalizers = cluster.finalizers + [self.names.finalizer]
        patched = self.client.patch(ctx, obj, {"metadata": {
            "finalizers": finalizers,
            "resourceVersion": cluster.resource_version,
        }})
        cluster.finalizers = finalizers
        cluster.resource_version = patched["metadata"]["resourceVersion"]
        return patched

    def handle_delete(self, ctx: Context, cluster: Cluster, obj: dict) -> Optional[Result]:
        """
        Clean up a cluster that is being deleted

        Returns:
            None when the cluster is not being deleted; otherwise the outcome
            of this deletion step
        """
        if cluster.deletion_timestamp is None:
            return None
        if self.names.finalizer not in cluster.finalizers:
            return Result()

        # Instances go first so PostgreSQL shuts down before its Services
        # and Secrets are collected.
        remaining = [
            sts for sts in self.client.list(ctx, "StatefulSet", cluster.namespace,
                                            self.names.cluster_labels(cluster.name))
            if is_controlled_by(sts, cluster)
        ]
        if remaining:
            for sts in remaining:
                if not sts["metadata"].get("deletionTimestamp"):
                    self.client.delete(ctx, sts)
            return Result.after(DELETION_RECHECK)

        self.client.patch(ctx, obj, {"metadata": {
            "finalizers": [f for f in cluster.finalizers if f != self.names.finalizer],
            "resourceVersion": cluster.resource_version,
        }})
        self.recorder.event(cluster.reference(), "Normal", "Deleted",
                            f"Cluster {cluster.name} and its instances were deleted")
        return Result()

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _apply(self, ctx: Context, cluster: Cluster, desired: dict,
               exclusive: bool = True, existing=_UNSET) -> dict:
        """Upsert desired with cluster as its owner, keeping other owners"""
        kind, namespace, name = identity(desired)
        if existing is _UNSET:
            existing = self.client.get(ctx, kind, namespace, name)
        if existing is not None:
            desired.setdefault("metadata", {})["ownerReferences"] = copy.deepcopy(
                existing["metadata"].get("ownerReferences") or [])
        assign_owner(cluster, desired, exclusive)
        return self.client.apply(ctx, desired, existing)

    def _delete_owned(self, ctx: Context, cluster: Cluster, kind: str, name: str):
        existing = self.client.get(ctx, kind, cluster.namespace, name)
        if existing is not None and is_controlled_by(existing, cluster):
            self.client.delete(ctx, existing)

    def _metadata(self, cluster: Cluster, name: str, **extra) -> dict:
        metadata = {
            "name": name,
            "namespace": cluster.namespace,
            "labels": self.names.cluster_labels(cluster.name),
        }
        metadata.update(extra)
        return metadata

    def _primary_host(self, cluster: Cluster) -> str:
        return f"{self.names.primary_service(cluster.name)}.{cluster.namespace}.svc"

    # ========================================================================
    # STAGES
    # ========================================================================

    def reconcile_patroni_status(self, ctx: Context, state: ReconcileState):
        """Record what Patroni has written to its Endpoints; writes nothing"""
        cluster = state.cluster
        dcs = self.client.get(ctx, "Endpoints", cluster.namespace,
                              self.names.distributed_configuration(cluster.name))
        leader = self.client.get(ctx, "Endpoints", cluster.namespace,
                                 self.names.leader_service(cluster.name))

        if dcs is not None:
            annotations = dcs["metadata"].get("annotations") or {}
            if annotations.get(patroni.INITIALIZE_ANNOTATION):
                cluster.status.patroni.system_identifier = annotations[patroni.INITIALIZE_ANNOTATION]

        annotations = (leader or {}).get("metadata", {}).get("annotations") or {}
        cluster.status.patroni.leader = annotations.get(patroni.LEADER_ANNOTATION, "")

    def reconcile_pguser_secret(self, ctx: Context, state: ReconcileState):
        """
        Credentials of the bootstrap superuser and the replication user

        Passwords are generated the first time and kept afterwards.
        """
        cluster = state.cluster
        name = self.names.pguser_secret(cluster.name)
        existing = self.client.get(ctx, "Secret", cluster.namespace, name)
        data = (existing or {}).get("data")

        password = decode(data, instance.PGUSER_PASSWORD_KEY) or generate_password()
        replication = decode(data, instance.REPLICATION_PASSWORD_KEY) or generate_password()

        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(cluster, name),
            "type": "Opaque",
            "data": {
                "user": encode(self.names.bootstrap_user),
                instance.PGUSER_PASSWORD_KEY: encode(password),
                instance.REPLICATION_PASSWORD_KEY: encode(replication),
                "host": encode(self._primary_host(cluster)),
                "port": encode(str(cluster.spec.port)),
            },
        }
        state.pguser = self._apply(ctx, cluster, secret, existing=existing)

    def reconcile_cluster_config_map(self, ctx: Context, state: ReconcileState):
        cluster = state.cluster
        data = {
            self.names.patroni_config_key: patroni.cluster_yaml(cluster, self.names, state.hbas, state.parameters),
            self.names.pgbouncer_ini_key: None,
        }
        if cluster.spec.proxy is not None:
            data[self.names.pgbouncer_ini_key] = pgbouncer.cluster_ini(cluster, self.names)

        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._metadata(cluster, self.names.cluster_config_map(cluster.name)),
            "data": data,
        }
        state.config_map = self._apply(ctx, cluster, config_map)

    def reconcile_root_certificate(self, ctx: Context, state: ReconcileState):
        """
        The namespace-wide root certificate authority

        Shared by every cluster in the namespace, so each cluster is only a
        plain owner of it.
        """
        cluster = state.cluster
        name = self.names.root_ca_secret
        existing = self.client.get(ctx, "Secret", cluster.namespace, name)
        data = (existing or {}).get("data") or {}

        root = None
        if data.get(pki.ROOT_CERTIFICATE_KEY) and data.get(pki.ROOT_PRIVATE_KEY_KEY):
            root = pki.RootCertificateAuthority.from_pem(
                base64.b64decode(data[pki.ROOT_CERTIFICATE_KEY]),
                base64.b64decode(data[pki.ROOT_PRIVATE_KEY_KEY]))
        if root is not None and root.is_valid():
            stored = {k: data[k] for k in (pki.ROOT_CERTIFICATE_KEY, pki.ROOT_PRIVATE_KEY_KEY)}
        else:
            root = pki.RootCertificateAuthority.generate()
            stored = {
                pki.ROOT_CERTIFICATE_KEY: encode(root.certificate_pem),
                pki.ROOT_PRIVATE_KEY_KEY: encode(root.private_key_pem),
            }

        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": cluster.namespace},
            "type": "Opaque",
            "data": stored,
        }
        self._apply(ctx, cluster, secret, exclusive=False, existing=existing)
        state.root_ca = root

    def reconcile_pod_service(self, ctx: Context, state: ReconcileState):
        """Headless Service giving every instance pod a stable DNS name"""
        cluster = state.cluster
        service = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(cluster, self.names.pod_service(cluster.name)),
            "spec": {
                "clusterIP": "None",
                "publishNotReadyAddresses": True,
                "selector": self.names.cluster_labels(cluster.name),
                "ports": [{"name": "postgres", "port": cluster.spec.port, "protocol": "TCP"}],
            },
        }
        state.pod_service = self._apply(ctx, cluster, service)

    def reconcile_leader_service(self, ctx: Context, state: ReconcileState):
        """
        Service whose Endpoints Patroni uses as its leader lease

        It has no selector; Patroni writes the Endpoints of the same name.
        """
        cluster = state.cluster
        service = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(cluster, self.names.leader_service(cluster.name)),
            "spec": {
                "type": "ClusterIP",
                "ports": [{"name": "postgres", "port": cluster.spec.port, "protocol": "TCP"}],
            },
        }
        state.leader_service = self._apply(ctx, cluster, service)

    def reconcile_primary_service(self, ctx: Context, state: ReconcileState):
        """Headless Service resolving to the leader Service's address"""
        cluster = state.cluster
        leader = state.leader_service
        cluster_ip = (leader.get("spec") or {}).get("clusterIP")
        if not cluster_ip or cluster_ip == "None":
            raise ApiError(f"leader Service of {cluster.key} has no cluster IP yet")

        name = self.names.primary_service(cluster.name)
        ports = [{"name": p["name"], "port": p["port"], "protocol": p.get("protocol", "TCP")}
                 for p in leader["spec"]["ports"]]
        service = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(cluster, name),
            "spec": {"clusterIP": "None", "ports": ports},
        }
        self._apply(ctx, cluster, service)

        # Endpoints of a Service share its name
        endpoints = {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": self._metadata(cluster, name),
            "subsets": [{
                "addresses": [{"ip": cluster_ip}],
                "ports": [dict(p) for p in ports],
            }],
        }
        self._apply(ctx, cluster, endpoints)

    def reconcile_cluster_certificate(self, ctx: Context, state: ReconcileState):
        """Leaf certificate for the cluster's Services, signed by the root"""
        cluster = state.cluster
        root = state.root_ca
        name = self.names.cluster_certificate(cluster.name)

        services = [self.names.primary_service(cluster.name)]
        if cluster.spec.proxy is not None:
            services.append(self.names.pgbouncer(cluster.name))
        pods = self.names.pod_service(cluster.name)
        dns_names = pki.cluster_dns_names(services, cluster.namespace) + [
            f"*.{pods}.{cluster.namespace}.svc.cluster.local",
            f"*.{pods}.{cluster.namespace}.svc",
        ]

        existing = self.client.get(ctx, "Secret", cluster.namespace, name)
        data = (existing or {}).get("data") or {}

        leaf = None
        if data.get("tls.crt") and data.get("tls.key"):
            leaf = pki.LeafCertificate.from_pem(
                base64.b64decode(data["tls.crt"]), base64.b64decode(data["tls.key"]))
        if leaf is not None and leaf.is_current(root, dns_names):
            stored = {"tls.crt": data["tls.crt"], "tls.key": data["tls.key"]}
        else:
            leaf = pki.LeafCertificate.issue(root, self.names.primary_service(cluster.name), dns_names)
            stored = {"tls.crt": encode(leaf.certificate_pem), "tls.key": encode(leaf.private_key_pem)}
            logger.info(f"Issued certificate {cluster.namespace}/{name}")
        stored["ca.crt"] = encode(root.certificate_pem)

        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(cluster, name),
            "type": "kubernetes.io/tls",
            "data": stored,
        }
        self._apply(ctx, cluster, secret, existing=existing)
        state.cluster_certificate = {
            "name": name,
            "items": [{"key": k, "path": k} for k in ("tls.crt", "tls.key", "ca.crt")],
        }

    def reconcile_distributed_configuration(self, ctx: Context, state: ReconcileState):
        """
        The Endpoints Patroni uses as its configuration store

        Created ahead of Patroni so it is owned by the cluster and collected
        with it. Patroni adds annotations and writes the same labels.
        """
        cluster = state.cluster
        endpoints = {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": self._metadata(cluster, self.names.distributed_configuration(cluster.name),
                                       labels=self.names.patroni_labels(cluster.name)),
        }
        self._apply(ctx, cluster, endpoints)

    def reconcile_dynamic_configuration(self, ctx: Context, state: ReconcileState):
        """Push HBA rules and parameters to running instances through Patroni"""
        cluster = state.cluster
        dcs = self.client.get(ctx, "Endpoints", cluster.namespace,
                              self.names.distributed_configuration(cluster.name))
        annotations = (dcs or {}).get("metadata", {}).get("annotations") or {}

        # Until Patroni initializes the cluster it reads bootstrap.dcs instead
        if not annotations.get(patroni.INITIALIZE_ANNOTATION):
            return

        current = annotations.get(patroni.CONFIG_ANNOTATION)
        merged = patroni.merge_dynamic_configuration(current, state.hbas, state.parameters)
        try:
            unchanged = current is not None and json.loads(current) == json.loads(merged)
        except ValueError:
            unchanged = False
        if unchanged:
            return

        self.client.patch(ctx, dcs, {"metadata": {
            "resourceVersion": dcs["metadata"].get("resourceVersion"),
            "annotations": {patroni.CONFIG_ANNOTATION: merged},
        }})

    def reconcile_instance_sets(self, ctx: Context, state: ReconcileState):
        """One StatefulSet per instance set, in spec order"""
        cluster = state.cluster
        wanted = set()
        for instance_set in cluster.spec.instance_sets:
            ctx.check()
            desired = instance.statefulset(cluster, self.names, instance_set)
            wanted.add(desired["metadata"]["name"])
            live = self._apply(ctx, cluster, desired)
            replicas = (live.get("spec") or {}).get("replicas", instance_set.replicas)
            state.instances.extend(instance.pod_names(desired["metadata"]["name"], replicas))

        # Instance sets removed from the spec
        for sts in self.client.list(ctx, "StatefulSet", cluster.namespace,
                                    self.names.cluster_labels(cluster.name)):
            if sts["metadata"]["name"] not in wanted and is_controlled_by(sts, cluster):
                self.client.delete(ctx, sts)

    def reconcile_pgbackrest(self, ctx: Context, state: ReconcileState) -> Optional[Result]:
        """
        Backup configuration and stanza

        Asks to be called again while the stanza cannot be created yet.
        """
        cluster = state.cluster
        name = self.names.pgbackrest_config(cluster.name)
        if cluster.spec.backups is None:
            self._delete_owned(ctx, cluster, "ConfigMap", name)
            cluster.status.pgbackrest = PGBackRestStatus()
            return None

        target = pgbackrest.target_instance(state.instances, cluster.status.patroni.leader)
        if not target:
            logger.info(f"Waiting for an instance in {cluster.key} before configuring backups")
            cluster.status.pgbackrest.target_instance = ""
            return Result.after(STANZA_RECHECK)

        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._metadata(cluster, name),
            "data": {
                self.names.pgbackrest_config_key: pgbackrest.config_contents(cluster, self.names, target),
            },
        }
        self._apply(ctx, cluster, config_map)
        cluster.status.pgbackrest.target_instance = target

        if cluster.status.pgbackrest.stanza_created:
            return None
        leader = cluster.status.patroni.leader
        if not leader or leader not in state.instances or self.pod_exec is None:
            logger.info(f"Waiting for a primary in {cluster.key} before creating the backup stanza")
            return Result.after(STANZA_RECHECK)

        self.pod_exec(ctx, cluster.namespace, leader, "database", pgbackrest.stanza_create_command())
        cluster.status.pgbackrest.stanza_created = True
        logger.info(f"{WHITE}Created pgBackRest stanza for {cluster.key}{RESET}")
        return None

    def reconcile_pgbouncer(self, ctx: Context, state: ReconcileState):
        """PgBouncer Secret, Deployment and Service, and its backend function"""
        cluster = state.cluster
        name = self.names.pgbouncer(cluster.name)
        if cluster.spec.proxy is None:
            for kind in ("Deployment", "Service", "Secret"):
                self._delete_owned(ctx, cluster, kind, name)
            cluster.status.proxy = PGBouncerStatus()
            return

        existing = self.client.get(ctx, "Secret", cluster.namespace, name)
        password = decode((existing or {}).get("data"), self.names.pgbouncer_password_key) or generate_password()
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(cluster, name),
            "type": "Opaque",
            "data": {
                self.names.pgbouncer_password_key: encode(password),
                self.names.pgbouncer_auth_key: encode(
                    pgbouncer.auth_file_contents(self.names.pgbouncer_user, password.encode())),
            },
        }
        self._apply(ctx, cluster, secret, existing=existing)

        deployment = self._apply(ctx, cluster, pgbouncer.deployment(cluster, self.names))
        self._apply(ctx, cluster, pgbouncer.service(cluster, self.names))
        cluster.status.proxy.ready_replicas = (deployment.get("status") or {}).get("readyReplicas") or 0

        revision = pgbouncer.postgres_revision(password)
        if cluster.status.proxy.postgres_revision == revision or not cluster.status.patroni.leader:
            return

        database = self.database_factory(
            host=self._primary_host(cluster),
            port=cluster.spec.port,
            user=self.names.bootstrap_user,
            password=decode(state.pguser.get("data"), instance.PGUSER_PASSWORD_KEY),
        )
        database.install_pgbouncer_auth(ctx, self.names.pgbouncer_user, password)
        cluster.status.proxy.postgres_revision = revision

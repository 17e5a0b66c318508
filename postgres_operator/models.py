"""
PostgresCluster data model

The custom resource is decoded into dataclasses once per reconcile attempt.
Only `status` is ever written back; `to_status_dict()` produces the exact
body sent to the status subresource.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from postgres_operator.config import Config
from postgres_operator.naming import API_VERSION, KIND


# ============================================================================
# SPEC
# ============================================================================

@dataclass
class InstanceSetSpec:
    """One group of identical PostgreSQL instances"""
    name: str = ""
    replicas: Optional[int] = None
    image: str = ""
    storage: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceSetSpec":
        claim = data.get("dataVolumeClaimSpec") or {}
        requests = (claim.get("resources") or {}).get("requests") or {}
        return cls(
            name=data.get("name", ""),
            replicas=data.get("replicas"),
            image=data.get("image", ""),
            storage=requests.get("storage") or "",
        )


@dataclass
class PGBouncerSpec:
    """Connection pooler settings"""
    port: Optional[int] = None
    replicas: Optional[int] = None
    image: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "PGBouncerSpec":
        return cls(
            port=data.get("port"),
            replicas=data.get("replicas"),
            image=data.get("image", ""),
        )


@dataclass
class BackupSpec:
    """pgBackRest settings"""
    repo_path: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "BackupSpec":
        return cls(repo_path=data.get("repoPath", ""))


@dataclass
class ClusterSpec:
    port: Optional[int] = None
    image: str = ""
    instance_sets: List[InstanceSetSpec] = field(default_factory=list)
    proxy: Optional[PGBouncerSpec] = None
    backups: Optional[BackupSpec] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterSpec":
        proxy = (data.get("proxy") or {}).get("pgBouncer")
        backups = (data.get("archive") or {}).get("pgbackrest")
        return cls(
            port=data.get("port"),
            image=data.get("image", ""),
            instance_sets=[InstanceSetSpec.from_dict(s) for s in data.get("instances") or []],
            proxy=PGBouncerSpec.from_dict(proxy) if proxy is not None else None,
            backups=BackupSpec.from_dict(backups) if backups is not None else None,
        )


# ============================================================================
# STATUS
# ============================================================================

@dataclass
class PatroniStatus:
    system_identifier: str = ""
    leader: str = ""


@dataclass
class PGBackRestStatus:
    stanza_created: bool = False
    target_instance: str = ""


@dataclass
class PGBouncerStatus:
    postgres_revision: str = ""
    ready_replicas: int = 0


@dataclass
class ClusterStatus:
    """Observed state; compared structurally against the pre-reconcile copy"""
    observed_generation: int = 0
    patroni: PatroniStatus = field(default_factory=PatroniStatus)
    pgbackrest: PGBackRestStatus = field(default_factory=PGBackRestStatus)
    proxy: PGBouncerStatus = field(default_factory=PGBouncerStatus)
    conditions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ClusterStatus":
        data = data or {}
        patroni = data.get("patroni") or {}
        pgbackrest = data.get("pgbackrest") or {}
        pgbouncer = (data.get("proxy") or {}).get("pgBouncer") or {}
        return cls(
            observed_generation=data.get("observedGeneration", 0),
            patroni=PatroniStatus(
                system_identifier=patroni.get("systemIdentifier", ""),
                leader=patroni.get("leader", ""),
            ),
            pgbackrest=PGBackRestStatus(
                stanza_created=pgbackrest.get("stanzaCreated", False),
                target_instance=pgbackrest.get("targetInstance", ""),
            ),
            proxy=PGBouncerStatus(
                postgres_revision=pgbouncer.get("postgresRevision", ""),
                ready_replicas=pgbouncer.get("readyReplicas", 0),
            ),
            conditions=copy.deepcopy(data.get("conditions") or []),
        )

    def to_dict(self) -> dict:
        return {
            "observedGeneration": self.observed_generation,
            "patroni": {
                "systemIdentifier": self.patroni.system_identifier,
                "leader": self.patroni.leader,
            },
            "pgbackrest": {
                "stanzaCreated": self.pgbackrest.stanza_created,
                "targetInstance": self.pgbackrest.target_instance,
            },
            "proxy": {
                "pgBouncer": {
                    "postgresRevision": self.proxy.postgres_revision,
                    "readyReplicas": self.proxy.ready_replicas,
                },
            },
            "conditions": copy.deepcopy(self.conditions),
        }


def status_changed(before: ClusterStatus, after: ClusterStatus) -> bool:
    """Structural comparison of two status values"""
    return before != after


# ============================================================================
# CLUSTER
# ============================================================================

@dataclass
class Cluster:
    """The PostgresCluster custom resource"""
    namespace: str
    name: str
    uid: str = ""
    generation: int = 0
    resource_version: str = ""
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, obj: dict) -> "Cluster":
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation", 0),
            resource_version=metadata.get("resourceVersion", ""),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=list(metadata.get("finalizers") or []),
            spec=ClusterSpec.from_dict(obj.get("spec") or {}),
            status=ClusterStatus.from_dict(obj.get("status")),
        )

    def reference(self) -> dict:
        """Identity of this object as used by owner references and events"""
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
        }

    def default(self):
        """
        Fill in settings that may not have been stored in the API

        Mutates the in-memory object only; nothing here is persisted.
        """
        spec = self.spec
        if spec.port is None:
            spec.port = 5432
        if not spec.image:
            spec.image = Config.DEFAULT_POSTGRES_IMAGE

        for index, instance_set in enumerate(spec.instance_sets):
            if not instance_set.name:
                instance_set.name = f"{index:02d}"
            if instance_set.replicas is None:
                instance_set.replicas = 1
            if not instance_set.image:
                instance_set.image = spec.image
            if not instance_set.storage:
                instance_set.storage = "1Gi"

        if spec.proxy is not None:
            if spec.proxy.port is None:
                spec.proxy.port = 5432
            if spec.proxy.replicas is None:
                spec.proxy.replicas = 1
            if not spec.proxy.image:
                spec.proxy.image = Config.DEFAULT_PGBOUNCER_IMAGE

        if spec.backups is not None:
            if not spec.backups.repo_path:
                spec.backups.repo_path = "/pgbackrest/repo1"

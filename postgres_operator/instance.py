"""
Instance set StatefulSets

Each instance set becomes one StatefulSet whose pods run Patroni and
PostgreSQL. Pods are addressed through the headless pods Service.
"""

from typing import List

from postgres_operator import patroni, pgbackrest
from postgres_operator.models import Cluster, InstanceSetSpec
from postgres_operator.naming import NamingScheme

PGUSER_PASSWORD_KEY = "password"
REPLICATION_PASSWORD_KEY = "replication-password"


def pod_names(statefulset_name: str, replicas: int) -> List[str]:
    """Pod names a StatefulSet of the given size produces"""
    return [f"{statefulset_name}-{ordinal}" for ordinal in range(replicas)]


def _env(cluster: Cluster, names: NamingScheme) -> List[dict]:
    pguser = names.pguser_secret(cluster.name)
    return [
        {"name": "PATRONI_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        {"name": "PATRONI_KUBERNETES_POD_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
        {"name": "PATRONI_KUBERNETES_NAMESPACE", "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}},
        {"name": "PATRONI_SCOPE", "value": patroni.scope(cluster, names)},
        {"name": "PATRONI_POSTGRESQL_CONNECT_ADDRESS", "value": f"$(PATRONI_KUBERNETES_POD_IP):{cluster.spec.port}"},
        {"name": "PATRONI_RESTAPI_CONNECT_ADDRESS", "value": "$(PATRONI_KUBERNETES_POD_IP):8008"},
        {"name": "PATRONI_SUPERUSER_PASSWORD", "valueFrom": {"secretKeyRef": {"name": pguser, "key": PGUSER_PASSWORD_KEY}}},
        {"name": "PATRONI_REPLICATION_PASSWORD", "valueFrom": {"secretKeyRef": {"name": pguser, "key": REPLICATION_PASSWORD_KEY}}},
    ]


def statefulset(cluster: Cluster, names: NamingScheme, instance_set: InstanceSetSpec) -> dict:
    name = names.instance_set(cluster.name, instance_set.name)
    labels = {
        names.label_cluster: cluster.name,
        names.label_instance_set: instance_set.name,
    }

    mounts = [
        {"name": "patroni-config", "mountPath": names.pg_config_directory, "readOnly": True},
        {"name": "tls", "mountPath": names.pg_tls_directory, "readOnly": True},
        {"name": "pgdata", "mountPath": names.pg_data_directory},
    ]
    volumes = [
        {"name": "patroni-config", "projected": {"sources": [{"configMap": {
            "name": names.cluster_config_map(cluster.name),
            "items": [{"key": names.patroni_config_key, "path": names.patroni_config_key}],
        }}]}},
        {"name": "tls", "projected": {"defaultMode": 0o600, "sources": [{"secret": {
            "name": names.cluster_certificate(cluster.name),
            "items": [
                {"key": "tls.crt", "path": "tls.crt"},
                {"key": "tls.key", "path": "tls.key"},
                {"key": "ca.crt", "path": "ca.crt"},
            ],
        }}]}},
    ]
    if cluster.spec.backups is not None:
        mounts.append({"name": "pgbackrest-config", "mountPath": pgbackrest.CONFIG_DIRECTORY, "readOnly": True})
        volumes.append({"name": "pgbackrest-config", "projected": {"sources": [{"configMap": {
            "name": names.pgbackrest_config(cluster.name),
            "items": [{"key": names.pgbackrest_config_key, "path": names.pgbackrest_config_key}],
            "optional": True,
        }}]}})

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": name,
            "namespace": cluster.namespace,
            "labels": dict(labels),
        },
        "spec": {
            "replicas": instance_set.replicas,
            "serviceName": names.pod_service(cluster.name),
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels, **names.patroni_labels(cluster.name))},
                "spec": {
                    "enableServiceLinks": False,
                    "containers": [{
                        "name": "database",
                        "image": instance_set.image,
                        "command": ["patroni", f"{names.pg_config_directory}/{names.patroni_config_key}"],
                        "env": _env(cluster, names),
                        "ports": [
                            {"name": "postgres", "containerPort": cluster.spec.port, "protocol": "TCP"},
                            {"name": "patroni", "containerPort": 8008, "protocol": "TCP"},
                        ],
                        "volumeMounts": mounts,
                    }],
                    "volumes": volumes,
                },
            },
            "volumeClaimTemplates": [{
                "metadata": {"name": "pgdata"},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": instance_set.storage}},
                },
            }],
        },
    }

"""
Patroni configuration

Patroni keeps its cluster-wide settings in the distributed configuration
store, here the `<cluster>-ha-config` Endpoints. Before the cluster is
initialized Patroni reads them from `bootstrap.dcs` in patroni.yaml; after
that they only change through the store's `config` annotation.
"""

import copy
import json
from typing import Optional

import yaml

from postgres_operator.models import Cluster
from postgres_operator.naming import NamingScheme
from postgres_operator.postgres import HBAs, Parameters

CONFIG_ANNOTATION = "config"
INITIALIZE_ANNOTATION = "initialize"
LEADER_ANNOTATION = "leader"

YAML_GENERATED_WARNING = (
    "# Generated by postgres-operator. DO NOT EDIT.\n"
    "# Your changes will not be saved.\n"
)


def scope(cluster: Cluster, names: NamingScheme) -> str:
    """Patroni scope; the leader Endpoints carry this name"""
    return names.leader_service(cluster.name)


def dynamic_configuration(hbas: HBAs, parameters: Parameters) -> dict:
    return {
        "loop_wait": 10,
        "ttl": 30,
        "postgresql": {
            "parameters": parameters.merged(),
            "pg_hba": hbas.lines(),
            "use_pg_rewind": True,
            "use_slots": False,
        },
    }


def cluster_yaml(cluster: Cluster, names: NamingScheme, hbas: HBAs, parameters: Parameters) -> str:
    """
    Render patroni.yaml shared by every instance of cluster

    Instance specific values (name, addresses, passwords) come from the
    environment of each pod.
    """
    document = {
        "bootstrap": {
            "dcs": dynamic_configuration(hbas, parameters),
            "initdb": [{"encoding": "UTF8"}, "data-checksums"],
        },
        "kubernetes": {
            "namespace": cluster.namespace,
            "labels": names.patroni_labels(cluster.name),
            "scope_label": names.label_patroni,
            "role_label": names.label_role,
            "use_endpoints": True,
        },
        "postgresql": {
            "data_dir": f"{names.pg_data_directory}/pg",
            "listen": f"*:{cluster.spec.port}",
            "pg_hba": hbas.lines(),
            "authentication": {
                "superuser": {"username": names.bootstrap_user},
                "replication": {"username": names.replication_user},
            },
        },
        "restapi": {"listen": "*:8008"},
        "scope": scope(cluster, names),
    }
    return YAML_GENERATED_WARNING + yaml.safe_dump(document, default_flow_style=False, sort_keys=True)


def merge_dynamic_configuration(current: Optional[str], hbas: HBAs, parameters: Parameters) -> str:
    """
    Merge operator settings into the stored `config` annotation

    Settings Patroni or an administrator put there are kept; the HBA list is
    replaced and mandatory parameters win over stored ones. The result is
    serialized with sorted keys so an unchanged input yields the same string.
    """
    try:
        config = json.loads(current) if current else {}
    except ValueError:
        config = {}
    if not isinstance(config, dict):
        config = {}

    config = copy.deepcopy(config)
    postgresql = config.setdefault("postgresql", {})
    stored = postgresql.get("parameters") or {}
    merged = dict(parameters.default)
    merged.update(stored)
    merged.update(parameters.mandatory)
    postgresql["parameters"] = merged
    postgresql["pg_hba"] = hbas.lines()
    return json.dumps(config, sort_keys=True, separators=(",", ":"))

"""
Names, labels and in-container paths of everything the operator generates

Every generated object is keyed by a deterministic name derived from the
cluster identity so that repeated reconciles address the same objects.
"""

from dataclasses import dataclass
from typing import Dict

# API identity of the PostgresCluster custom resource
GROUP = "postgres-operator.crunchydata.com"
VERSION = "v1beta1"
PLURAL = "postgresclusters"
KIND = "PostgresCluster"
API_VERSION = f"{GROUP}/{VERSION}"

RESERVED_CLUSTER_NAME = "postgres"


@dataclass(frozen=True)
class NamingScheme:
    """
    Frozen naming scheme injected into the reconciler and the generators

    The defaults match what the database and pooler images expect; tests may
    build their own instance but nothing mutates one at runtime.
    """

    label_prefix: str = GROUP + "/"
    finalizer: str = GROUP + "/finalizer"

    bootstrap_user: str = "postgres"
    replication_user: str = "_crunchyrepl"
    pgbouncer_user: str = "_crunchypgbouncer"

    root_ca_secret: str = "pgo-root-cacert"

    # PostgreSQL container paths
    pg_config_directory: str = "/etc/patroni"
    pg_tls_directory: str = "/pgconf/tls"
    pg_data_directory: str = "/pgdata"

    # PgBouncer container paths
    pgbouncer_config_directory: str = "/etc/pgbouncer"
    pgbouncer_ini_projection: str = "~postgres-operator.ini"
    pgbouncer_auth_projection: str = "~postgres-operator/users.txt"
    pgbouncer_frontend_directory: str = "~postgres-operator/frontend"
    pgbouncer_backend_directory: str = "~postgres-operator/backend"

    # Keys inside generated ConfigMaps and Secrets
    patroni_config_key: str = "patroni.yaml"
    pgbouncer_ini_key: str = "pgbouncer.ini"
    pgbouncer_auth_key: str = "pgbouncer-users.txt"
    pgbouncer_password_key: str = "pgbouncer-password"
    pgbackrest_config_key: str = "pgbackrest.conf"

    # Labels
    @property
    def label_cluster(self) -> str:
        return self.label_prefix + "cluster"

    @property
    def label_instance_set(self) -> str:
        return self.label_prefix + "instance-set"

    @property
    def label_role(self) -> str:
        return self.label_prefix + "role"

    @property
    def label_patroni(self) -> str:
        return self.label_prefix + "patroni"

    def cluster_labels(self, cluster_name: str) -> Dict[str, str]:
        return {self.label_cluster: cluster_name}

    def patroni_labels(self, cluster_name: str) -> Dict[str, str]:
        """Labels Patroni selects its members by; the value is its scope"""
        return {self.label_cluster: cluster_name, self.label_patroni: self.leader_service(cluster_name)}

    def role_labels(self, cluster_name: str, role: str) -> Dict[str, str]:
        return {self.label_cluster: cluster_name, self.label_role: role}

    # Object names
    def cluster_config_map(self, cluster_name: str) -> str:
        return f"{cluster_name}-config"

    def pguser_secret(self, cluster_name: str) -> str:
        return f"{cluster_name}-pguser"

    def cluster_certificate(self, cluster_name: str) -> str:
        return f"{cluster_name}-cluster-cert"

    def pod_service(self, cluster_name: str) -> str:
        return f"{cluster_name}-pods"

    def leader_service(self, cluster_name: str) -> str:
        return f"{cluster_name}-ha"

    def primary_service(self, cluster_name: str) -> str:
        return f"{cluster_name}-primary"

    def distributed_configuration(self, cluster_name: str) -> str:
        return f"{cluster_name}-ha-config"

    def instance_set(self, cluster_name: str, set_name: str) -> str:
        return f"{cluster_name}-{set_name}"

    def pgbackrest_config(self, cluster_name: str) -> str:
        return f"{cluster_name}-pgbackrest-config"

    def pgbouncer(self, cluster_name: str) -> str:
        return f"{cluster_name}-pgbouncer"

    # PgBouncer absolute paths
    @property
    def pgbouncer_ini_path(self) -> str:
        return f"{self.pgbouncer_config_directory}/{self.pgbouncer_ini_projection}"

    @property
    def pgbouncer_auth_path(self) -> str:
        return f"{self.pgbouncer_config_directory}/{self.pgbouncer_auth_projection}"

    @property
    def pgbouncer_frontend_path(self) -> str:
        return f"{self.pgbouncer_config_directory}/{self.pgbouncer_frontend_directory}"

    @property
    def pgbouncer_backend_path(self) -> str:
        return f"{self.pgbouncer_config_directory}/{self.pgbouncer_backend_directory}"


DEFAULT_NAMING = NamingScheme()

"""
PgBouncer configuration and manifests

Everything here is a pure function of the cluster and the credentials passed
in. Identical inputs produce byte-identical output, which keeps the generated
ConfigMap and Secret stable across reconciles.
"""

import hashlib
from typing import Dict, List

from postgres_operator.models import Cluster
from postgres_operator.naming import NamingScheme
from postgres_operator.postgres import HostBasedAuthentication

INI_GENERATED_WARNING = (
    "# Generated by postgres-operator. DO NOT EDIT.\n"
    "# Your changes will not be saved.\n"
)

AUTH_QUERY = "SELECT username, password from pgbouncer.get_auth($1)"

# Bump when the SQL installed by database.install_pgbouncer_auth changes
BACKEND_SQL_VERSION = "1"


class IniValueSet(dict):
    """A group of settings rendered as sorted `key = value` lines"""

    def __str__(self) -> str:
        return "".join(f"{key} = {self[key]}\n" for key in sorted(self))


def auth_file_contents(user: str, password: bytes) -> bytes:
    """
    Render a PgBouncer user database

    Each line holds two fields surrounded by double quotes. A double quote
    inside a field is written as two double quotes.
    """
    def quote(value: str) -> str:
        return '"' + value.replace('"', '""') + '"'

    return (quote(user) + " " + quote(password.decode()) + "\n").encode()


def cluster_ini(cluster: Cluster, names: NamingScheme) -> str:
    """Render pgbouncer.ini for cluster"""
    proxy = cluster.spec.proxy

    # PgBouncer before v1.15 only honours "auth_user" above the first
    # [databases] section.
    early = IniValueSet({"auth_user": names.pgbouncer_user})

    # One wildcard pool per requested database, all pointing at the primary
    # Service. PgBouncer asks PostgreSQL whether the database exists.
    databases = "[databases]\n* = host={} port={}\n".format(
        names.primary_service(cluster.name), cluster.spec.port)

    defaults = IniValueSet({
        # Drivers such as JDBC always send this startup parameter
        "ignore_startup_parameters": "extra_float_digits",
    })

    mandatory = IniValueSet({
        # Passwords live in PostgreSQL; auth_user runs auth_query to read them
        "auth_file": names.pgbouncer_auth_path,
        "auth_query": AUTH_QUERY,
        "auth_user": names.pgbouncer_user,

        "client_tls_sslmode": "require",
        "client_tls_cert_file": f"{names.pgbouncer_frontend_path}/tls.crt",
        "client_tls_key_file": f"{names.pgbouncer_frontend_path}/tls.key",
        "client_tls_ca_file": f"{names.pgbouncer_frontend_path}/ca.crt",

        "conffile": names.pgbouncer_ini_path,

        "listen_addr": "*",
        "listen_port": str(proxy.port),

        "server_tls_sslmode": "verify-full",
        "server_tls_ca_file": f"{names.pgbouncer_backend_path}/ca.crt",

        # Keeps the filesystem read-only
        "unix_socket_dir": "",
    })

    return (INI_GENERATED_WARNING
            + "\n[pgbouncer]\n" + str(early) + databases
            + "\n[pgbouncer]\n" + str(defaults)
            + "\n[pgbouncer]\n" + str(mandatory))


def postgresql_hbas(cluster: Cluster, names: NamingScheme) -> List[HostBasedAuthentication]:
    """Access rules PostgreSQL needs so PgBouncer can run its auth query"""
    if cluster.spec.proxy is None:
        return []
    return [
        HostBasedAuthentication().tls().user(names.pgbouncer_user).method("scram-sha-256"),
        HostBasedAuthentication().tcp().user(names.pgbouncer_user).method("reject"),
    ]


def postgres_revision(password: str) -> str:
    """Fingerprint of what has been installed in PostgreSQL for the pooler"""
    digest = hashlib.sha256()
    digest.update(BACKEND_SQL_VERSION.encode())
    digest.update(b"\x00")
    digest.update(password.encode())
    return digest.hexdigest()[:16]


def pod_config_projections(cluster: Cluster, names: NamingScheme) -> List[Dict]:
    """Volume projections that place PgBouncer's files where the INI expects"""
    cert_secret = names.cluster_certificate(cluster.name)
    return [
        {"configMap": {
            "name": names.cluster_config_map(cluster.name),
            "items": [{"key": names.pgbouncer_ini_key, "path": names.pgbouncer_ini_projection}],
        }},
        {"secret": {
            "name": names.pgbouncer(cluster.name),
            "items": [{"key": names.pgbouncer_auth_key, "path": names.pgbouncer_auth_projection}],
        }},
        {"secret": {
            "name": cert_secret,
            "items": [
                {"key": "tls.crt", "path": f"{names.pgbouncer_frontend_directory}/tls.crt"},
                {"key": "tls.key", "path": f"{names.pgbouncer_frontend_directory}/tls.key"},
                {"key": "ca.crt", "path": f"{names.pgbouncer_frontend_directory}/ca.crt"},
                {"key": "ca.crt", "path": f"{names.pgbouncer_backend_directory}/ca.crt"},
            ],
        }},
    ]


def deployment(cluster: Cluster, names: NamingScheme) -> dict:
    proxy = cluster.spec.proxy
    labels = dict(names.role_labels(cluster.name, "pgbouncer"))
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": names.pgbouncer(cluster.name),
            "namespace": cluster.namespace,
            "labels": dict(labels),
        },
        "spec": {
            "replicas": proxy.replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "enableServiceLinks": False,
                    "containers": [{
                        "name": "pgbouncer",
                        "image": proxy.image,
                        "command": ["pgbouncer", names.pgbouncer_ini_path],
                        "ports": [{"name": "pgbouncer", "containerPort": proxy.port, "protocol": "TCP"}],
                        "volumeMounts": [{
                            "name": "pgbouncer-config",
                            "mountPath": names.pgbouncer_config_directory,
                            "readOnly": True,
                        }],
                        "securityContext": {
                            "allowPrivilegeEscalation": False,
                            "readOnlyRootFilesystem": True,
                        },
                    }],
                    "volumes": [{
                        "name": "pgbouncer-config",
                        "projected": {"sources": pod_config_projections(cluster, names)},
                    }],
                },
            },
        },
    }


def service(cluster: Cluster, names: NamingScheme) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": names.pgbouncer(cluster.name),
            "namespace": cluster.namespace,
            "labels": names.role_labels(cluster.name, "pgbouncer"),
        },
        "spec": {
            "type": "ClusterIP",
            "selector": names.role_labels(cluster.name, "pgbouncer"),
            "ports": [{
                "name": "pgbouncer",
                "port": cluster.spec.proxy.port,
                "protocol": "TCP",
                "targetPort": "pgbouncer",
            }],
        },
    }

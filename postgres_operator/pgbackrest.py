"""
pgBackRest configuration

One repository, one stanza. The stanza points at a single instance chosen by
the reconciler; stanza creation runs inside that instance's pod.
"""

from typing import List

from postgres_operator.models import Cluster
from postgres_operator.naming import NamingScheme

STANZA = "db"
CONFIG_DIRECTORY = "/etc/pgbackrest/conf.d"


def target_instance(instances: List[str], leader: str) -> str:
    """The leader when it is one of ours, else the first instance"""
    if leader in instances:
        return leader
    return instances[0] if instances else ""


def config_contents(cluster: Cluster, names: NamingScheme, target: str) -> str:
    host = f"{target}.{names.pod_service(cluster.name)}.{cluster.namespace}.svc"
    sections = {
        "global": {
            "log-path": "/tmp",
            "repo1-path": cluster.spec.backups.repo_path,
        },
        STANZA: {
            "pg1-host": host,
            "pg1-path": f"{names.pg_data_directory}/pg",
            "pg1-port": str(cluster.spec.port),
            "pg1-socket-path": "/tmp/postgres",
        },
    }
    lines = ["# Generated by postgres-operator. DO NOT EDIT.",
             "# Your changes will not be saved."]
    for section in sorted(sections):
        lines.append("")
        lines.append(f"[{section}]")
        values = sections[section]
        lines.extend(f"{key}={values[key]}" for key in sorted(values))
    return "\n".join(lines) + "\n"


def stanza_create_command() -> List[str]:
    return ["pgbackrest", "stanza-create", f"--stanza={STANZA}"]

"""Tests for HBA rules and parameters"""

from postgres_operator.naming import DEFAULT_NAMING
from postgres_operator.pgbouncer import postgresql_hbas
from postgres_operator.models import Cluster, ClusterSpec, PGBouncerSpec
from postgres_operator.postgres import HostBasedAuthentication, Parameters, cluster_hbas, cluster_parameters


def test_hba_rendering():
    assert str(HostBasedAuthentication().local().user("postgres").method("peer")) == 'local all "postgres" peer'
    assert str(HostBasedAuthentication().tcp().replication().user("repl").method("md5")) == 'host replication "repl" all md5'
    assert str(HostBasedAuthentication().tls().method("md5")) == "hostssl all all all md5"
    assert str(HostBasedAuthentication().tcp().database('we"ird').method("reject")) == 'host "we""ird" all all reject'
    assert str(HostBasedAuthentication().tls().method("cert", clientcert="verify-full")) == 'hostssl all all all cert clientcert="verify-full"'


def test_mandatory_rules_come_first():
    """Local peer, replication md5 twice, replication reject, then the rest"""
    cluster = Cluster(namespace="default", name="demo", spec=ClusterSpec(proxy=PGBouncerSpec(port=5432)))
    hbas = cluster_hbas(DEFAULT_NAMING, postgresql_hbas(cluster, DEFAULT_NAMING))

    assert hbas.lines() == [
        'local all "postgres" peer',
        'host replication "_crunchyrepl" all md5',
        'host "postgres" "_crunchyrepl" all md5',
        'host all "_crunchyrepl" all reject',
        'hostssl all "_crunchypgbouncer" all scram-sha-256',
        'host all "_crunchypgbouncer" all reject',
        'hostssl all all all md5',
    ]


def test_no_pooler_rules_without_proxy():
    cluster = Cluster(namespace="default", name="demo")
    hbas = cluster_hbas(DEFAULT_NAMING, postgresql_hbas(cluster, DEFAULT_NAMING))
    assert len(hbas.mandatory) == 4
    assert hbas.lines()[-1] == "hostssl all all all md5"


def test_parameters():
    parameters = cluster_parameters(DEFAULT_NAMING)
    merged = parameters.merged()

    assert merged["wal_level"] == "logical"
    assert merged["ssl"] == "on"
    assert merged["ssl_cert_file"] == "/pgconf/tls/tls.crt"
    assert merged["ssl_key_file"] == "/pgconf/tls/tls.key"
    assert merged["ssl_ca_file"] == "/pgconf/tls/ca.crt"
    assert merged["jit"] == "off"
    assert merged["password_encryption"] == "scram-sha-256"


def test_mandatory_parameters_override_defaults():
    parameters = Parameters()
    parameters.default.add("WAL_LEVEL", "replica")
    parameters.mandatory.add("wal_level", "logical")
    assert parameters.merged() == {"wal_level": "logical"}
    assert parameters.default.get_value("Wal_Level") == "replica"

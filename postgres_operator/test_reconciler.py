"""
Scenario tests for the PostgresCluster reconciler

Runs the full reconcile loop against the in-memory API in fakes.py.
"""

import base64
import json
from unittest.mock import ANY, Mock, patch

from postgres_operator.context import Context
from postgres_operator.errors import AlreadyOwnedError, ApiError, ConflictError, StageError
from postgres_operator.fakes import FakeKubernetesClient, FakeRecorder
from postgres_operator.naming import DEFAULT_NAMING
from postgres_operator.pgbouncer import postgres_revision
from postgres_operator.reconciler import Reconciler, Request
from postgres_operator.result import Result

DEMO = Request("default", "demo")
DEMO_SPEC = {"instances": [{"replicas": 1}], "proxy": {"pgBouncer": {}}}


def make_reconciler(spec=None, name="demo", **kwargs):
    client = FakeKubernetesClient()
    cluster = client.add_cluster(name, spec=spec if spec is not None else DEMO_SPEC)
    recorder = FakeRecorder()
    return client, recorder, Reconciler(client, recorder, **kwargs), cluster


def secret_value(client, name, key):
    return base64.b64decode(client.find("Secret", "default", name)["data"][key]).decode()


def add_patroni_endpoints(client, leader="demo-00-0", initialize="6912", config='{"ttl":30}'):
    client.add({"apiVersion": "v1", "kind": "Endpoints", "metadata": {
        "name": "demo-ha-config", "namespace": "default",
        "annotations": {"initialize": initialize, "config": config},
    }})
    client.add({"apiVersion": "v1", "kind": "Endpoints", "metadata": {
        "name": "demo-ha", "namespace": "default",
        "annotations": {"leader": leader},
    }})


def test_new_cluster():
    """A new cluster gets every dependent and its observed generation"""
    client, recorder, reconciler, _ = make_reconciler()

    result, error = reconciler.reconcile(Context(), DEMO)

    assert error is None
    assert result == Result()
    created = {(kind, name) for _, kind, _, name in client.writes_of("create")}
    assert created == {
        ("Secret", "demo-pguser"),
        ("ConfigMap", "demo-config"),
        ("Secret", "pgo-root-cacert"),
        ("Service", "demo-pods"),
        ("Service", "demo-ha"),
        ("Service", "demo-primary"),
        ("Endpoints", "demo-primary"),
        ("Secret", "demo-cluster-cert"),
        ("Endpoints", "demo-ha-config"),
        ("StatefulSet", "demo-00"),
        ("Secret", "demo-pgbouncer"),
        ("Deployment", "demo-pgbouncer"),
        ("Service", "demo-pgbouncer"),
    }

    cluster = client.find("PostgresCluster", "default", "demo")
    assert cluster["status"]["observedGeneration"] == 1
    assert DEFAULT_NAMING.finalizer in cluster["metadata"]["finalizers"]

    sts = client.find("StatefulSet", "default", "demo-00")
    assert sts["spec"]["replicas"] == 1
    assert sts["spec"]["serviceName"] == "demo-pods"
    assert sts["metadata"]["ownerReferences"][0]["controller"] is True

    config = client.find("ConfigMap", "default", "demo-config")["data"]
    assert set(config) == {"patroni.yaml", "pgbouncer.ini"}
    assert "* = host=demo-primary port=5432" in config["pgbouncer.ini"]

    root = client.find("Secret", "default", "pgo-root-cacert")
    assert "controller" not in root["metadata"]["ownerReferences"][0]

    leader_ip = client.find("Service", "default", "demo-ha")["spec"]["clusterIP"]
    endpoints = client.find("Endpoints", "default", "demo-primary")
    assert endpoints["subsets"][0]["addresses"] == [{"ip": leader_ip}]

    assert secret_value(client, "demo-pguser", "user") == "postgres"
    assert len(secret_value(client, "demo-pguser", "password")) == 24
    assert recorder.events == []


def test_second_reconcile_writes_nothing():
    client, _, reconciler, _ = make_reconciler()
    first = reconciler.reconcile(Context(), DEMO)
    writes = list(client.writes)
    password = secret_value(client, "demo-pguser", "password")
    certificate = client.find("Secret", "default", "demo-cluster-cert")["data"]

    second = reconciler.reconcile(Context(), DEMO)

    assert second == first
    assert client.writes == writes
    assert secret_value(client, "demo-pguser", "password") == password
    assert client.find("Secret", "default", "demo-cluster-cert")["data"] == certificate


def test_missing_cluster_is_not_an_error():
    client = FakeKubernetesClient()
    reconciler = Reconciler(client, FakeRecorder())
    assert reconciler.reconcile(Context(), DEMO) == (Result(), None)
    assert client.writes == []


def test_fetch_error_is_returned():
    client, _, reconciler, _ = make_reconciler()
    with patch.object(client, "get", side_effect=ApiError("boom", status=500)):
        result, error = reconciler.reconcile(Context(), DEMO)
    assert result == Result()
    assert isinstance(error, ApiError)


def test_reserved_name():
    """A cluster named postgres is refused without writes or an error"""
    client, recorder, reconciler, _ = make_reconciler(name="postgres")

    result, error = reconciler.reconcile(Context(), Request("default", "postgres"))

    assert (result, error) == (Result(), None)
    assert client.writes == []
    assert recorder.reasons == ["InvalidName"]
    assert recorder.events[0][0] == "Warning"


def test_deletion_removes_instances_then_finalizer():
    client = FakeKubernetesClient()
    cluster = client.add_cluster("demo", spec=DEMO_SPEC,
                                 deletionTimestamp="2026-10-17T00:00:00Z",
                                 finalizers=[DEFAULT_NAMING.finalizer])
    client.add({"apiVersion": "apps/v1", "kind": "StatefulSet", "metadata": {
        "name": "demo-00", "namespace": "default",
        "labels": DEFAULT_NAMING.cluster_labels("demo"),
        "ownerReferences": [{"kind": "PostgresCluster", "name": "demo",
                             "uid": cluster["metadata"]["uid"], "controller": True}],
    }})
    recorder = FakeRecorder()
    reconciler = Reconciler(client, recorder)

    result, error = reconciler.reconcile(Context(), DEMO)

    assert error is None
    assert result == Result.after(5)
    assert client.writes == [("delete", "StatefulSet", "default", "demo-00")]

    result, error = reconciler.reconcile(Context(), DEMO)

    assert (result, error) == (Result(), None)
    assert client.writes_of("create") == []
    assert client.writes[-1] == ("patch", "PostgresCluster", "default", "demo")
    assert client.find("PostgresCluster", "default", "demo")["metadata"]["finalizers"] == []
    assert recorder.reasons == ["Deleted"]


def test_deletion_without_finalizer_does_nothing():
    client = FakeKubernetesClient()
    client.add_cluster("demo", spec=DEMO_SPEC, deletionTimestamp="2026-10-17T00:00:00Z")
    reconciler = Reconciler(client, FakeRecorder())

    assert reconciler.reconcile(Context(), DEMO) == (Result(), None)
    assert client.writes == []


def test_deletion_error_is_fatal():
    client = FakeKubernetesClient()
    client.add_cluster("demo", deletionTimestamp="2026-10-17T00:00:00Z",
                       finalizers=[DEFAULT_NAMING.finalizer])
    reconciler = Reconciler(client, FakeRecorder())

    with patch.object(client, "list", side_effect=ApiError("boom")):
        result, error = reconciler.reconcile(Context(), DEMO)

    assert result == Result()
    assert isinstance(error, ApiError)


def test_foreign_controller_stops_the_pipeline():
    """A ConfigMap controlled by something else is a conflict and is not written"""
    client, _, reconciler, _ = make_reconciler()
    client.add({"apiVersion": "v1", "kind": "ConfigMap", "data": {}, "metadata": {
        "name": "demo-config", "namespace": "default",
        "ownerReferences": [{"apiVersion": "v1", "kind": "Other", "name": "x",
                             "uid": "someone-else", "controller": True}],
    }})

    result, error = reconciler.reconcile(Context(), DEMO)

    assert result == Result()
    assert isinstance(error, StageError)
    assert error.stage == "cluster-configmap"
    assert isinstance(error.cause, AlreadyOwnedError)
    assert not [w for w in client.writes if w[1:] == ("ConfigMap", "default", "demo-config")]
    # later stages never ran and the generation was not observed
    assert not [w for w in client.writes if w[1] == "StatefulSet"]
    status = client.find("PostgresCluster", "default", "demo").get("status") or {}
    assert status.get("observedGeneration", 0) == 0


def test_running_patroni_gets_dynamic_configuration_and_pooler_backend():
    database = Mock()
    factory = Mock(return_value=database)
    client, _, reconciler, _ = make_reconciler(database_factory=factory)
    add_patroni_endpoints(client)

    result, error = reconciler.reconcile(Context(), DEMO)
    assert (result, error) == (Result(), None)

    status = client.find("PostgresCluster", "default", "demo")["status"]
    assert status["patroni"] == {"systemIdentifier": "6912", "leader": "demo-00-0"}

    dcs = client.find("Endpoints", "default", "demo-ha-config")
    config = json.loads(dcs["metadata"]["annotations"]["config"])
    assert config["ttl"] == 30
    assert config["postgresql"]["pg_hba"][0] == 'local all "postgres" peer'
    assert config["postgresql"]["parameters"]["wal_level"] == "logical"
    assert dcs["metadata"]["ownerReferences"][0]["name"] == "demo"

    pooler_password = secret_value(client, "demo-pgbouncer", "pgbouncer-password")
    factory.assert_called_once_with(
        host="demo-primary.default.svc", port=5432, user="postgres",
        password=secret_value(client, "demo-pguser", "password"))
    database.install_pgbouncer_auth.assert_called_once_with(ANY, "_crunchypgbouncer", pooler_password)
    assert status["proxy"]["pgBouncer"]["postgresRevision"] == postgres_revision(pooler_password)

    writes = list(client.writes)
    reconciler.reconcile(Context(), DEMO)
    assert client.writes == writes
    assert database.install_pgbouncer_auth.call_count == 1


def test_backups_wait_for_a_primary():
    spec = dict(DEMO_SPEC, archive={"pgbackrest": {}})
    pod_exec = Mock()
    client, _, reconciler, _ = make_reconciler(spec=spec, pod_exec=pod_exec)

    result, error = reconciler.reconcile(Context(), DEMO)

    assert error is None
    assert result == Result.after(10)
    pod_exec.assert_not_called()
    config = client.find("ConfigMap", "default", "demo-pgbackrest-config")["data"]["pgbackrest.conf"]
    assert "pg1-host=demo-00-0.demo-pods.default.svc" in config
    status = client.find("PostgresCluster", "default", "demo")["status"]
    assert status["observedGeneration"] == 1
    assert status["pgbackrest"] == {"stanzaCreated": False, "targetInstance": "demo-00-0"}


def test_backups_create_stanza_on_the_leader():
    spec = dict(DEMO_SPEC, archive={"pgbackrest": {}})
    pod_exec = Mock()
    client, _, reconciler, _ = make_reconciler(spec=spec, pod_exec=pod_exec, database_factory=Mock())
    add_patroni_endpoints(client)

    result, error = reconciler.reconcile(Context(), DEMO)

    assert (result, error) == (Result(), None)
    args = pod_exec.call_args[0]
    assert args[1:] == ("default", "demo-00-0", "database", ["pgbackrest", "stanza-create", "--stanza=db"])
    status = client.find("PostgresCluster", "default", "demo")["status"]
    assert status["pgbackrest"]["stanzaCreated"] is True


def test_removing_the_proxy_removes_pooler_objects():
    client, _, reconciler, _ = make_reconciler()
    reconciler.reconcile(Context(), DEMO)

    cluster = client.objects[("PostgresCluster", "default", "demo")]
    del cluster["spec"]["proxy"]
    cluster["metadata"]["generation"] = 2

    result, error = reconciler.reconcile(Context(), DEMO)

    assert (result, error) == (Result(), None)
    deleted = {(kind, name) for _, kind, _, name in client.writes_of("delete")}
    assert deleted == {
        ("Deployment", "demo-pgbouncer"),
        ("Service", "demo-pgbouncer"),
        ("Secret", "demo-pgbouncer"),
    }
    assert "pgbouncer.ini" not in client.find("ConfigMap", "default", "demo-config")["data"]
    assert client.find("PostgresCluster", "default", "demo")["status"]["observedGeneration"] == 2


def test_removed_instance_sets_are_deleted():
    client, _, reconciler, _ = make_reconciler()
    reconciler.reconcile(Context(), DEMO)

    cluster = client.objects[("PostgresCluster", "default", "demo")]
    cluster["spec"]["instances"] = [{"name": "new", "replicas": 2}]

    reconciler.reconcile(Context(), DEMO)

    assert client.find("StatefulSet", "default", "demo-00") is None
    assert client.find("StatefulSet", "default", "demo-new")["spec"]["replicas"] == 2


def test_status_conflict_is_returned():
    client, _, reconciler, _ = make_reconciler()
    with patch.object(client, "patch_status", side_effect=ConflictError("modified")):
        result, error = reconciler.reconcile(Context(), DEMO)
    assert result == Result()
    assert isinstance(error, ConflictError)


def test_cancelled_attempt_leaves_applied_objects():
    client, _, reconciler, _ = make_reconciler()
    ctx = Context()
    issue_root = reconciler.reconcile_root_certificate

    def cancel_after(c, state):
        issue_root(c, state)
        ctx.cancel()

    with patch.object(reconciler, "reconcile_root_certificate", side_effect=cancel_after):
        result, error = reconciler.reconcile(ctx, DEMO)

    assert result == Result()
    assert isinstance(error, StageError)
    assert error.stage == "pod-service"
    assert client.find("Secret", "default", "pgo-root-cacert") is not None
    assert client.find("Service", "default", "demo-pods") is None


def test_backups_wait_for_an_instance():
    spec = {"instances": [{"replicas": 0}], "archive": {"pgbackrest": {}}}
    pod_exec = Mock()
    client, _, reconciler, _ = make_reconciler(spec=spec, pod_exec=pod_exec)

    result, error = reconciler.reconcile(Context(), DEMO)

    assert error is None
    assert result == Result.after(10)
    assert client.find("ConfigMap", "default", "demo-pgbackrest-config") is None
    pod_exec.assert_not_called()


def test_patroni_labels_on_its_configuration_store_are_kept():
    """Patroni labels the Endpoints it uses; the operator sets the same labels"""
    client, _, reconciler, _ = make_reconciler()
    reconciler.reconcile(Context(), DEMO)

    dcs = client.objects[("Endpoints", "default", "demo-ha-config")]
    patroni_labels = {
        DEFAULT_NAMING.label_cluster: "demo",
        DEFAULT_NAMING.label_patroni: "demo-ha",
    }
    assert dcs["metadata"]["labels"] == patroni_labels
    # Patroni rewrites its labels and annotations on every loop
    dcs["metadata"]["labels"] = dict(patroni_labels)
    dcs["metadata"]["annotations"] = {"initialize": "6912"}
    writes = len(client.writes)

    reconciler.reconcile(Context(), DEMO)

    assert [w for w in client.writes[writes:] if w[1] == "Endpoints"] == [
        ("patch", "Endpoints", "default", "demo-ha-config"),
    ], "only the dynamic configuration annotation is written"
    assert client.find("Endpoints", "default", "demo-ha-config")["metadata"]["labels"] == patroni_labels

    pods = client.find("StatefulSet", "default", "demo-00")["spec"]["template"]["metadata"]["labels"]
    assert patroni_labels.items() <= pods.items()

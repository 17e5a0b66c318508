"""Tests for owner reference assignment"""

import pytest

from postgres_operator.errors import AlreadyOwnedError, ConflictError
from postgres_operator.models import Cluster
from postgres_operator.ownership import assign_owner, controller_of, is_controlled_by


def cluster(name="demo", uid="uid-demo"):
    return Cluster(namespace="default", name=name, uid=uid)


def config_map():
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "demo-config"}}


def test_controller_reference():
    owner = cluster()
    obj = assign_owner(owner, config_map(), exclusive=True)

    refs = obj["metadata"]["ownerReferences"]
    assert refs == [{
        "apiVersion": "postgres-operator.crunchydata.com/v1beta1",
        "kind": "PostgresCluster",
        "name": "demo",
        "uid": "uid-demo",
        "controller": True,
        "blockOwnerDeletion": True,
    }]
    assert is_controlled_by(obj, owner)


def test_assigning_same_controller_twice_is_stable():
    owner = cluster()
    obj = assign_owner(owner, config_map(), exclusive=True)
    again = assign_owner(owner, obj, exclusive=True)
    assert len(again["metadata"]["ownerReferences"]) == 1


def test_second_controller_is_a_conflict():
    """A different controller is refused and the object is left untouched"""
    obj = assign_owner(cluster("first", "uid-1"), config_map(), exclusive=True)
    before = [dict(r) for r in obj["metadata"]["ownerReferences"]]

    with pytest.raises(AlreadyOwnedError) as info:
        assign_owner(cluster("second", "uid-2"), obj, exclusive=True)

    assert isinstance(info.value, ConflictError)
    assert obj["metadata"]["ownerReferences"] == before
    assert controller_of(obj)["name"] == "first"


def test_plain_owners_accumulate():
    """Shared objects may carry many plain owners next to a controller"""
    obj = assign_owner(cluster("first", "uid-1"), config_map(), exclusive=True)
    assign_owner(cluster("second", "uid-2"), obj, exclusive=False)
    assign_owner(cluster("third", "uid-3"), obj, exclusive=False)

    refs = obj["metadata"]["ownerReferences"]
    assert [r["name"] for r in refs] == ["first", "second", "third"]
    assert [bool(r.get("controller")) for r in refs] == [True, False, False]


def test_plain_reference_does_not_demote_controller():
    owner = cluster()
    obj = assign_owner(owner, config_map(), exclusive=True)
    assign_owner(owner, obj, exclusive=False)
    assert is_controlled_by(obj, owner)

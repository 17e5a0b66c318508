"""
In-memory stand-ins for the Kubernetes API, used by the tests

FakeKubernetesClient keeps objects in a dict, applies JSON merge patches,
enforces resourceVersion preconditions and records every write so tests can
count them. `apply` is inherited from the real client.
"""

import copy
import itertools
from typing import Dict, List, Optional, Tuple

from postgres_operator.context import Context
from postgres_operator.errors import ConflictError, NotFoundError
from postgres_operator.kube import KubernetesClient, identity
from postgres_operator.naming import API_VERSION, KIND


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch"""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakeKubernetesClient(KubernetesClient):

    def __init__(self, field_manager: str = "postgres-operator"):
        # No API client; every verb below is served from memory
        self.field_manager = field_manager
        self.dry_run = False
        self.objects: Dict[Tuple[str, str, str], dict] = {}
        self.writes: List[Tuple[str, str, str]] = []
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)
        self._ips = itertools.count(10)

    # -- seeding -----------------------------------------------------------

    def add(self, obj: dict) -> dict:
        """Store obj without recording a write"""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata["resourceVersion"] = str(next(self._versions))
        self.objects[identity(obj)] = obj
        return copy.deepcopy(obj)

    def add_cluster(self, name: str, namespace: str = "default", spec: Optional[dict] = None,
                    generation: int = 1, **metadata) -> dict:
        return self.add({
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": dict(name=name, namespace=namespace, generation=generation, **metadata),
            "spec": spec or {},
        })

    def find(self, kind: str, namespace: str, name: str) -> Optional[dict]:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def writes_of(self, verb: str) -> List[Tuple[str, str, str]]:
        return [w for w in self.writes if w[0] == verb]

    # -- verbs -------------------------------------------------------------

    def get(self, ctx: Context, kind: str, namespace: str, name: str) -> Optional[dict]:
        ctx.check()
        return self.find(kind, namespace, name)

    def list(self, ctx: Context, kind: str, namespace: str, labels: Dict[str, str]) -> List[dict]:
        ctx.check()
        found = []
        for (k, ns, _), obj in sorted(self.objects.items()):
            current = obj["metadata"].get("labels") or {}
            if k == kind and ns == namespace and all(current.get(l) == v for l, v in labels.items()):
                found.append(copy.deepcopy(obj))
        return found

    def create(self, ctx: Context, obj: dict) -> dict:
        ctx.check()
        key = identity(obj)
        if key in self.objects:
            raise ConflictError(f"create {key[0]} {key[1]}/{key[2]}: already exists")
        obj = copy.deepcopy(obj)
        if key[0] == "Service" and "clusterIP" not in obj.get("spec", {}):
            obj["spec"]["clusterIP"] = f"10.96.0.{next(self._ips)}"
        self.writes.append(("create",) + key)
        return self.add(obj)

    def _patch(self, verb: str, obj: dict, body: dict, field: Optional[str] = None) -> dict:
        key = identity(obj)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{verb} {key[0]} {key[1]}/{key[2]}: not found")
        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{verb} {key[0]} {key[1]}/{key[2]}: object has been modified")

        if field is None:
            updated = merge_patch(current, body)
        else:
            updated = copy.deepcopy(current)
            updated[field] = merge_patch(current.get(field), body.get(field))
        updated["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[key] = updated
        self.writes.append((verb,) + key)
        return copy.deepcopy(updated)

    def patch(self, ctx: Context, obj: dict, body: dict) -> dict:
        ctx.check()
        return self._patch("patch", obj, body)

    def patch_status(self, ctx: Context, obj: dict, body: dict) -> dict:
        ctx.check()
        return self._patch("patch_status", obj, body, field="status")

    def delete(self, ctx: Context, obj: dict):
        ctx.check()
        key = identity(obj)
        if self.objects.pop(key, None) is not None:
            self.writes.append(("delete",) + key)


class FakeRecorder:
    """Collects events instead of posting them"""

    def __init__(self):
        self.events: List[Tuple[str, str, str]] = []

    def event(self, involved: dict, event_type: str, reason: str, message: str):
        self.events.append((event_type, reason, message))

    @property
    def reasons(self) -> List[str]:
        return [reason for _, reason, _ in self.events]

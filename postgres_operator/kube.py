"""
Kubernetes API access

Objects are handled as plain dicts in their JSON shape. Every write carries
the operator's field manager, every call is bounded by the attempt's
Context, and ApiException status codes are mapped onto errors.py.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from postgres_operator.config import Config
from postgres_operator.context import Context
from postgres_operator.errors import ApiError, ConflictError, ForbiddenError, NotFoundError
from postgres_operator.naming import GROUP, KIND, PLURAL, VERSION

logger = logging.getLogger("postgres-operator.kube")

MERGE_PATCH = "application/merge-patch+json"

# kind -> (API group attribute, snake_case resource used by the generated client)
RESOURCES = {
    "ConfigMap": ("core", "config_map"),
    "Endpoints": ("core", "endpoints"),
    "Pod": ("core", "pod"),
    "Secret": ("core", "secret"),
    "Service": ("core", "service"),
    "Deployment": ("apps", "deployment"),
    "StatefulSet": ("apps", "stateful_set"),
}


def load_config():
    """Load in-cluster configuration, falling back to the local kubeconfig"""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        logger.warning("Failed to load in-cluster config, trying local kubeconfig")
        config.load_kube_config()


def translate(e: ApiException, action: str, kind: str, namespace: str, name: str) -> ApiError:
    """Wrap an ApiException with enough context to diagnose it"""
    message = f"{action} {kind} {namespace}/{name}: {e.reason}"
    if e.status == 404:
        return NotFoundError(message)
    if e.status == 409:
        return ConflictError(message)
    if e.status == 403:
        return ForbiddenError(message)
    return ApiError(message, status=e.status)


def is_subset(desired, actual) -> bool:
    """
    Whether every field set in desired already has that value in actual

    Fields the API server adds or defaults are ignored, which is what makes
    repeated applies of an unchanged object free. A None in desired means
    the field must be absent.
    """
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return False
        for key, value in desired.items():
            if value is None:
                if actual.get(key) is not None:
                    return False
            elif key not in actual or not is_subset(value, actual[key]):
                return False
        return True
    if isinstance(desired, list):
        if not isinstance(actual, list) or len(desired) != len(actual):
            return False
        return all(is_subset(d, a) for d, a in zip(desired, actual))
    return desired == actual


def prune_nulls(obj):
    """Drop None values; in a merge patch they delete, on create they mean nothing"""
    if isinstance(obj, dict):
        return {k: prune_nulls(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, list):
        return [prune_nulls(v) for v in obj]
    return obj


def identity(obj: dict):
    metadata = obj.get("metadata") or {}
    return obj.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", "")


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 field_manager: str = Config.FIELD_MANAGER, dry_run: bool = Config.DRY_RUN):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.field_manager = field_manager
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _method(self, verb: str, kind: str):
        try:
            group, resource = RESOURCES[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind: {kind}")
        api = self.core if group == "core" else self.apps
        return getattr(api, f"{verb}_namespaced_{resource}")

    def _write_options(self, ctx: Context) -> Dict:
        options = {"field_manager": self.field_manager, "_request_timeout": ctx.remaining()}
        if self.dry_run:
            options["dry_run"] = "All"
        return options

    def _to_dict(self, obj, kind: str) -> dict:
        data = self.api_client.sanitize_for_serialization(obj)
        # Typed responses do not always echo apiVersion and kind
        data.setdefault("kind", kind)
        return data

    # ------------------------------------------------------------------
    # verbs
    # ------------------------------------------------------------------

    def get(self, ctx: Context, kind: str, namespace: str, name: str) -> Optional[dict]:
        """
        Fetch one object

        Returns:
            The object, or None when it does not exist
        """
        ctx.check()
        try:
            if kind == KIND:
                return self.custom.get_namespaced_custom_object(
                    GROUP, VERSION, namespace, PLURAL, name,
                    _request_timeout=ctx.remaining())
            return self._to_dict(
                self._method("read", kind)(name, namespace, _request_timeout=ctx.remaining()), kind)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate(e, "get", kind, namespace, name) from e

    def list(self, ctx: Context, kind: str, namespace: str, labels: Dict[str, str]) -> List[dict]:
        ctx.check()
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        try:
            result = self._method("list", kind)(
                namespace, label_selector=selector, _request_timeout=ctx.remaining())
        except ApiException as e:
            raise translate(e, "list", kind, namespace, selector) from e
        return [self._to_dict(item, kind) for item in result.items]

    def create(self, ctx: Context, obj: dict) -> dict:
        ctx.check()
        kind, namespace, name = identity(obj)
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would create {kind} {namespace}/{name}")
        try:
            created = self._method("create", kind)(namespace, obj, **self._write_options(ctx))
        except ApiException as e:
            raise translate(e, "create", kind, namespace, name) from e
        logger.info(f"Created {kind} {namespace}/{name}")
        return self._to_dict(created, kind)

    def patch(self, ctx: Context, obj: dict, body: dict) -> dict:
        """
        Merge-patch obj with body

        When body carries metadata.resourceVersion the API server rejects the
        write with a conflict if obj changed since it was read.
        """
        ctx.check()
        kind, namespace, name = identity(obj)
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would patch {kind} {namespace}/{name}")
        try:
            if kind == KIND:
                return self.custom.patch_namespaced_custom_object(
                    GROUP, VERSION, namespace, PLURAL, name, body, **self._write_options(ctx))
            patched = self._method("patch", kind)(
                name, namespace, body, _content_type=MERGE_PATCH, **self._write_options(ctx))
        except ApiException as e:
            raise translate(e, "patch", kind, namespace, name) from e
        logger.info(f"Patched {kind} {namespace}/{name}")
        return self._to_dict(patched, kind)

    def patch_status(self, ctx: Context, obj: dict, body: dict) -> dict:
        """Merge-patch the status subresource of a PostgresCluster"""
        ctx.check()
        _, namespace, name = identity(obj)
        try:
            return self.custom.patch_namespaced_custom_object_status(
                GROUP, VERSION, namespace, PLURAL, name, body, **self._write_options(ctx))
        except ApiException as e:
            raise translate(e, "patch status of", KIND, namespace, name) from e

    def delete(self, ctx: Context, obj: dict):
        """
        Delete obj if it is still the same object

        A uid precondition keeps a stale delete from removing a replacement
        created under the same name. Deleting something already gone is fine.
        """
        ctx.check()
        kind, namespace, name = identity(obj)
        options = {"propagation_policy": "Background", "_request_timeout": ctx.remaining()}
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would delete {kind} {namespace}/{name}")
            options["dry_run"] = "All"
        uid = (obj.get("metadata") or {}).get("uid")
        body = {"preconditions": {"uid": uid}} if uid else None
        try:
            self._method("delete", kind)(name, namespace, body=body, **options)
        except ApiException as e:
            if e.status == 404:
                return
            raise translate(e, "delete", kind, namespace, name) from e
        logger.info(f"Deleted {kind} {namespace}/{name}")

    def apply(self, ctx: Context, desired: dict, existing: Optional[dict]) -> dict:
        """
        Create desired if absent, patch it if it drifted, otherwise do nothing

        Args:
            ctx: Attempt context
            desired: Full manifest of the object
            existing: The live object as just read, or None

        Returns:
            The live object after the write, or existing when nothing changed
        """
        if existing is None:
            return self.create(ctx, prune_nulls(desired))
        if is_subset(desired, existing):
            return existing

        body = copy.deepcopy(desired)
        body.setdefault("metadata", {})["resourceVersion"] = existing["metadata"].get("resourceVersion")
        return self.patch(ctx, existing, body)


class EventRecorder:
    """Best-effort core/v1 Events attached to a PostgresCluster"""

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 component: str = Config.FIELD_MANAGER):
        self.core = client.CoreV1Api(api_client or client.ApiClient())
        self.component = component

    def event(self, involved: dict, event_type: str, reason: str, message: str):
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "metadata": {
                "generateName": f"{involved['name']}.",
                "namespace": involved["namespace"],
            },
            "involvedObject": involved,
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.core.create_namespaced_event(involved["namespace"], body)
        except ApiException as e:
            logger.warning(f"Unable to record {reason} event for {involved['namespace']}/{involved['name']}: {e.reason}")


class PodExecutor:
    """Runs a command in a container and returns its stdout"""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.core = client.CoreV1Api(api_client or client.ApiClient())

    def __call__(self, ctx: Context, namespace: str, pod: str, container: str, command: List[str]) -> str:
        ctx.check()
        try:
            response = stream(
                self.core.connect_get_namespaced_pod_exec, pod, namespace,
                container=container, command=command,
                stderr=True, stdin=False, stdout=True, tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise translate(e, "exec in", "Pod", namespace, pod) from e

        try:
            response.run_forever(timeout=ctx.remaining())
            stdout = response.read_stdout()
            stderr = response.read_stderr()
            returncode = response.returncode
        finally:
            response.close()

        if returncode is None:
            raise ApiError(f"exec in Pod {namespace}/{pod}: {command[0]} did not finish")
        if returncode != 0:
            raise ApiError(f"exec in Pod {namespace}/{pod}: {command[0]} exited {returncode}: {stderr.strip()}")
        logger.info(f"Ran {' '.join(command)} in {namespace}/{pod}")
        return stdout

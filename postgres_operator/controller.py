"""
PostgresCluster Operator

Watches PostgresCluster objects and every kind of object they own, queues the
affected clusters, and reconciles them on a fixed pool of worker threads.

Features:
- De-duplicating work queue with delayed and rate-limited requeues
- Fixed-size worker pool; one reconcile attempt per worker at a time
- Per-attempt deadlines that cancel promptly on shutdown
- Structured logging with severity levels
- Dry-run mode support
- Prometheus metrics exposure
"""

import heapq
import itertools
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional, Set

from kubernetes import watch
from kubernetes.client.rest import ApiException

from postgres_operator.config import BLUE, GREEN, RED, RESET, Config, setup_logging
from postgres_operator.context import Context
from postgres_operator.kube import EventRecorder, KubernetesClient, PodExecutor, load_config
from postgres_operator.naming import DEFAULT_NAMING, GROUP, KIND, PLURAL, VERSION
from postgres_operator.reconciler import Reconciler, Request
from postgres_operator.result import Result

logger = logging.getLogger("postgres-operator")


# ============================================================================
# METRICS (Prometheus-compatible)
# ============================================================================

class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self):
        self._lock = threading.Lock()
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.requeue_count = 0
        self.error_count = 0
        self.last_error_timestamp = 0
        self.reconcile_seconds_total = 0.0

    def record_reconciliation(self, result: Result, error: Optional[BaseException], duration: float):
        """Record the outcome of one reconcile attempt"""
        with self._lock:
            self.reconciliation_count += 1
            self.last_reconciliation_timestamp = time.time()
            self.reconcile_seconds_total += duration
            if error is not None:
                self.error_count += 1
                self.last_error_timestamp = time.time()
            elif not result.is_zero:
                self.requeue_count += 1

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        with self._lock:
            return f"""# HELP postgres_operator_reconciliations_total Total number of reconcile attempts
# TYPE postgres_operator_reconciliations_total counter
postgres_operator_reconciliations_total {self.reconciliation_count}

# HELP postgres_operator_last_reconciliation_timestamp Timestamp of last reconcile attempt
# TYPE postgres_operator_last_reconciliation_timestamp gauge
postgres_operator_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP postgres_operator_requeues_total Reconcile attempts that asked to be requeued
# TYPE postgres_operator_requeues_total counter
postgres_operator_requeues_total {self.requeue_count}

# HELP postgres_operator_errors_total Reconcile attempts that ended in an error
# TYPE postgres_operator_errors_total counter
postgres_operator_errors_total {self.error_count}

# HELP postgres_operator_last_error_timestamp Timestamp of last error
# TYPE postgres_operator_last_error_timestamp gauge
postgres_operator_last_error_timestamp {self.last_error_timestamp}

# HELP postgres_operator_reconcile_seconds_total Time spent reconciling
# TYPE postgres_operator_reconcile_seconds_total counter
postgres_operator_reconcile_seconds_total {self.reconcile_seconds_total:.3f}
"""


def serve_metrics(metrics: Metrics, port: int) -> ThreadingHTTPServer:
    """Serve /metrics on a daemon thread"""

    class MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/metrics":
                self.send_error(404)
                return
            body = metrics.export_prometheus().encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            logger.debug("metrics: " + format % args)

    server = ThreadingHTTPServer(("", port), MetricsHandler)
    threading.Thread(target=server.serve_forever, name="metrics", daemon=True).start()
    logger.info(f"Serving metrics on :{port}/metrics")
    return server


# ============================================================================
# WORK QUEUE
# ============================================================================

class WorkQueue:
    """
    Queue of reconcile requests

    A request is never handed to two workers at once, and a request added
    while it is being processed is queued again once the worker is done.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 300.0):
        self._cond = threading.Condition()
        self._queue = []
        self._dirty: Set[Request] = set()
        self._processing: Set[Request] = set()
        self._delayed = []
        self._sequence = itertools.count()
        self._failures: Dict[Request, int] = {}
        self._shutdown = False
        self.base_delay = base_delay
        self.max_delay = max_delay

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, request: Request):
        with self._cond:
            self._add_locked(request)

    def _add_locked(self, request: Request):
        if self._shutdown or request in self._dirty:
            return
        self._dirty.add(request)
        if request not in self._processing:
            self._queue.append(request)
            self._cond.notify()

    def add_after(self, request: Request, delay: float):
        if delay <= 0:
            self.add(request)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._sequence), request))
            self._cond.notify()

    def add_rate_limited(self, request: Request):
        """Requeue after an exponentially growing delay per request"""
        with self._cond:
            failures = self._failures.get(request, 0)
            self._failures[request] = failures + 1
        self.add_after(request, min(self.base_delay * (2 ** failures), self.max_delay))

    def forget(self, request: Request):
        with self._cond:
            self._failures.pop(request, None)

    def get(self) -> Optional[Request]:
        """Block until a request is ready; None once the queue shuts down"""
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                now = time.monotonic()
                while self._delayed and self._delayed[0][0] <= now:
                    _, _, request = heapq.heappop(self._delayed)
                    self._add_locked(request)
                if self._queue:
                    request = self._queue.pop(0)
                    self._dirty.discard(request)
                    self._processing.add(request)
                    return request
                timeout = self._delayed[0][0] - now if self._delayed else None
                self._cond.wait(timeout)

    def done(self, request: Request):
        with self._cond:
            self._processing.discard(request)
            if request in self._dirty:
                self._queue.append(request)
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


# ============================================================================
# CONTROLLER
# ============================================================================

def _metadata(obj) -> dict:
    if isinstance(obj, dict):
        return obj.get("metadata") or {}
    meta = obj.metadata
    return {
        "name": meta.name,
        "namespace": meta.namespace,
        "labels": meta.labels or {},
        "ownerReferences": [
            {"kind": ref.kind, "name": ref.name, "controller": ref.controller}
            for ref in meta.owner_references or []
        ],
    }


def cluster_request(obj) -> Optional[Request]:
    """Request for a PostgresCluster event"""
    meta = _metadata(obj)
    return Request(meta["namespace"], meta["name"])


def owner_request(obj) -> Optional[Request]:
    """Request for the PostgresCluster controlling obj, if any"""
    meta = _metadata(obj)
    for ref in meta.get("ownerReferences") or []:
        if ref.get("controller") and ref.get("kind") == KIND:
            return Request(meta["namespace"], ref["name"])
    return None


def endpoints_request(obj) -> Optional[Request]:
    """
    Request for an Endpoints event

    Patroni creates the leader Endpoints itself, so they have no owner; its
    labels still name the cluster.
    """
    request = owner_request(obj)
    if request is not None:
        return request
    meta = _metadata(obj)
    cluster = (meta.get("labels") or {}).get(DEFAULT_NAMING.label_cluster)
    return Request(meta["namespace"], cluster) if cluster else None


class Controller:
    """
    Main controller for reconciling PostgresCluster objects
    """

    def __init__(self, client: KubernetesClient, reconciler: Reconciler,
                 namespace: str = Config.WATCH_NAMESPACE,
                 workers: int = Config.WORKER_COUNT,
                 metrics: Optional[Metrics] = None):
        self.client = client
        self.reconciler = reconciler
        self.namespace = namespace
        self.workers = workers
        self.metrics = metrics or Metrics()
        self.queue = WorkQueue()
        self.stopping = threading.Event()
        self._threads = []
        logger.info("PostgresCluster controller initialized")

    def process(self, request: Request):
        """Run one reconcile attempt and schedule what comes next"""
        ctx = Context(timeout=Config.RECONCILE_TIMEOUT, cancelled=self.stopping)
        started = datetime.now()
        try:
            result, error = self.reconciler.reconcile(ctx, request)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {request.key}: {e}", exc_info=True)
            result, error = Result(), e
        duration = (datetime.now() - started).total_seconds()
        self.metrics.record_reconciliation(result, error, duration)

        if error is not None:
            logger.error(f"{RED}Reconcile of {request.key} failed after {duration:.2f}s: {error}{RESET}")
            self.queue.add_rate_limited(request)
        elif result.requeue:
            self.queue.add_rate_limited(request)
        elif result.requeue_after > 0:
            self.queue.forget(request)
            self.queue.add_after(request, result.requeue_after)
        else:
            self.queue.forget(request)

    def _work(self):
        while True:
            request = self.queue.get()
            if request is None:
                return
            try:
                self.process(request)
            finally:
                self.queue.done(request)

    def _watch(self, name: str, list_func, to_request, **kwargs):
        """Feed the queue from a watch, restarting it until shutdown"""
        while not self.stopping.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(list_func, timeout_seconds=Config.WATCH_TIMEOUT, **kwargs):
                    if self.stopping.is_set():
                        break
                    request = to_request(event["object"])
                    if request is not None:
                        self.queue.add(request)
            except ApiException as e:
                logger.warning(f"Watch of {name} ended: {e.reason}")
                self.stopping.wait(5)
            except Exception as e:
                logger.error(f"Watch of {name} failed: {e}", exc_info=True)
                self.stopping.wait(5)
            finally:
                w.stop()

    def _watches(self):
        core, apps, custom = self.client.core, self.client.apps, self.client.custom
        selector = {"label_selector": DEFAULT_NAMING.label_cluster}
        # (name, namespaced list, cluster-wide list, request mapping)
        dependents = [
            ("statefulsets", apps.list_namespaced_stateful_set, apps.list_stateful_set_for_all_namespaces, owner_request),
            ("deployments", apps.list_namespaced_deployment, apps.list_deployment_for_all_namespaces, owner_request),
            ("configmaps", core.list_namespaced_config_map, core.list_config_map_for_all_namespaces, owner_request),
            ("secrets", core.list_namespaced_secret, core.list_secret_for_all_namespaces, owner_request),
            ("services", core.list_namespaced_service, core.list_service_for_all_namespaces, owner_request),
            ("endpoints", core.list_namespaced_endpoints, core.list_endpoints_for_all_namespaces, endpoints_request),
        ]
        if self.namespace:
            watches = [("postgresclusters", custom.list_namespaced_custom_object, cluster_request,
                        dict(group=GROUP, version=VERSION, namespace=self.namespace, plural=PLURAL))]
            watches.extend((name, namespaced, to_request, dict(namespace=self.namespace, **selector))
                           for name, namespaced, _, to_request in dependents)
            return watches
        watches = [("postgresclusters", custom.list_cluster_custom_object, cluster_request,
                    dict(group=GROUP, version=VERSION, plural=PLURAL))]
        watches.extend((name, everywhere, to_request, dict(selector))
                       for name, _, everywhere, to_request in dependents)
        return watches

    def start(self):
        logger.info(f"{GREEN}Controller started (DRY_RUN={Config.DRY_RUN}, workers={self.workers}){RESET}")
        for name, func, to_request, kwargs in self._watches():
            thread = threading.Thread(target=self._watch, name=f"watch-{name}",
                                      args=(name, func, to_request), kwargs=kwargs, daemon=True)
            thread.start()
            self._threads.append(thread)
        for index in range(self.workers):
            thread = threading.Thread(target=self._work, name=f"worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float = 10.0):
        """Cancel in-flight attempts and wait for workers to return"""
        logger.info(f"{BLUE}Shutting down controller...{RESET}")
        self.stopping.set()
        self.queue.shutdown()
        for thread in self._threads:
            if thread.name.startswith("worker-"):
                thread.join(timeout)

    def run(self):
        self.start()
        self.stopping.wait()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    setup_logging()
    controller = None
    try:
        load_config()
        client = KubernetesClient()
        reconciler = Reconciler(
            client,
            EventRecorder(client.api_client),
            pod_exec=PodExecutor(client.api_client),
        )
        controller = Controller(client, reconciler)
        serve_metrics(controller.metrics, Config.METRICS_PORT)
        signal.signal(signal.SIGTERM, lambda signum, frame: controller.stopping.set())
        controller.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if controller:
            controller.stop()


if __name__ == "__main__":
    main()

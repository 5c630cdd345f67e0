#!/usr/bin/env python3
"""
Certificate Manager - Main Entry Point.

Usage:
    python main.py apply <manifest.json>
    python main.py delete <namespace>/<name>
    python main.py reconcile <namespace>/<name> [--event Created|Updated|Deleted|Resynced]
    python main.py list
    python main.py run
"""

import argparse
import json
import logging
import sys
import time

from config.settings import LOG_FORMAT, LOG_LEVEL, SCHEDULER_ENABLED
from certmanager import services
from certmanager.exceptions import CertManagerError, NotFound
from certmanager.models import CertificateRequest, EventKind, Workload


# ============================================================
# Commands
# ============================================================

def cmd_apply(args):
    """Apply Certificate and Deployment manifests from a JSON file."""
    with open(args.manifest) as f:
        data = json.load(f)
    manifests = data if isinstance(data, list) else [data]

    requests = services.get_request_store()
    workloads = services.get_workload_store()
    reconciler = services.get_reconciler(requests=requests, workloads=workloads)

    # workloads first so reloadOnChange sees them
    for manifest in manifests:
        if manifest.get("kind") == "Deployment":
            workload = workloads.apply(Workload.from_dict(manifest))
            print(f"deployment/{workload.name} configured")

    for manifest in manifests:
        if manifest.get("kind") != "Certificate":
            continue
        request = CertificateRequest.from_manifest(manifest)
        event = requests.apply(request)
        if event is None:
            print(f"certificate/{request.name} unchanged")
            continue
        print(f"certificate/{request.name} {event.value.lower()}")
        _reconcile_and_report(reconciler, request.namespace, request.name, event)


def cmd_delete(args):
    """Request deletion of a certificate and reconcile it."""
    namespace, name = _split_key(args.key)
    requests = services.get_request_store()
    try:
        requests.mark_deleted(namespace, name)
    except NotFound as e:
        print(e.message)
        sys.exit(1)
    print(f"certificate/{name} deleted")
    _reconcile_and_report(
        services.get_reconciler(requests=requests), namespace, name, EventKind.DELETED,
    )


def cmd_reconcile(args):
    """Run a single reconcile for one certificate."""
    namespace, name = _split_key(args.key)
    _reconcile_and_report(services.get_reconciler(), namespace, name, EventKind(args.event))


def cmd_list(args):
    """List certificate requests with their status."""
    requests = services.get_request_store().list_all()
    if not requests:
        print("No certificates found.")
        return
    for r in requests:
        expiry = r.status.expiry_timestamp.isoformat() if r.status.expiry_timestamp else "-"
        print(
            f"  {r.key:40s} {r.dns_name:30s} {r.status.phase or '-':12s} "
            f"expires: {expiry}"
        )


def cmd_run(args):
    """Run the control loop until interrupted."""
    if not SCHEDULER_ENABLED:
        print("Scheduler disabled, reconciling every certificate once.")
        reconciler = services.get_reconciler()
        for request in reconciler.requests.list_all():
            _reconcile_and_report(reconciler, request.namespace, request.name, EventKind.RESYNCED)
        return

    controller = services.get_controller()
    controller.start()
    print("Controller running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()


# ============================================================
# Helpers
# ============================================================

def _split_key(key: str) -> tuple[str, str]:
    """Split ``namespace/name``; a bare name uses the default namespace."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return "default", key


def _reconcile_and_report(reconciler, namespace: str, name: str, event: EventKind) -> None:
    try:
        hint = reconciler.reconcile(namespace, name, event)
    except CertManagerError as e:
        print(f"Reconcile failed: {e}")
        sys.exit(1)

    request = reconciler.requests.get(namespace, name)
    if request is None:
        print(f"  {namespace}/{name}: removed")
        return
    print(f"  {request.key}: {request.status.phase} - {request.status.message}")
    if hint.requeue:
        print(f"  next reconcile in {hint.delay}")


# ============================================================
# Parser
# ============================================================

def build_parser():
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Self-signed certificate manager"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command")

    ap = subparsers.add_parser("apply", help="Apply Certificate/Deployment manifests")
    ap.add_argument("manifest", help="Path to a JSON manifest (object or list)")
    ap.set_defaults(func=cmd_apply)

    de = subparsers.add_parser("delete", help="Delete a certificate")
    de.add_argument("key", help="namespace/name")
    de.set_defaults(func=cmd_delete)

    rc = subparsers.add_parser("reconcile", help="Reconcile one certificate")
    rc.add_argument("key", help="namespace/name")
    rc.add_argument(
        "--event",
        choices=[e.value for e in EventKind],
        default=EventKind.RESYNCED.value,
    )
    rc.set_defaults(func=cmd_reconcile)

    ls = subparsers.add_parser("list", help="List certificates")
    ls.set_defaults(func=cmd_list)

    rn = subparsers.add_parser("run", help="Run the reconcile loop")
    rn.set_defaults(func=cmd_run)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    args.func(args)


if __name__ == "__main__":
    main()

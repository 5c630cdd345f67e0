"""Wire stores, engine and reconciler from the project settings."""

from config.settings import (
    AUDIT_LOG_PATH,
    REQUESTS_PATH,
    SECRETS_PATH,
    WORKLOADS_PATH,
)


def get_request_store():
    from certmanager.stores import RequestStore
    return RequestStore(REQUESTS_PATH)


def get_secret_store():
    from certmanager.stores import SecretStore
    return SecretStore(SECRETS_PATH)


def get_workload_store():
    from certmanager.stores import WorkloadStore
    return WorkloadStore(WORKLOADS_PATH)


def get_audit_log():
    from certmanager.audit import AuditLog
    return AuditLog(AUDIT_LOG_PATH)


def get_reconciler(requests=None, secrets=None, workloads=None):
    from certmanager.notifier import DependentWorkloadNotifier
    from certmanager.reconciler import ReconciliationStateMachine

    return ReconciliationStateMachine(
        requests=requests or get_request_store(),
        secrets=secrets or get_secret_store(),
        notifier=DependentWorkloadNotifier(workloads or get_workload_store()),
        audit=get_audit_log(),
    )


def get_controller():
    from certmanager.controller import Controller

    requests = get_request_store()
    return Controller(get_reconciler(requests=requests), requests)

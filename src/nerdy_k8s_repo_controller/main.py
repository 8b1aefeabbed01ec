from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import argparse
import logging
import signal
import sys

from .config import ConfigError, ControllerConfig, load_config
from .controller import RepositoryController
from .credentials import SecretFileStore
from .ensurer import RepositoryEnsurer
from .executor import RepositoryExecutor
from .k8s import (
    BackupRepositoryStore,
    BackupStorageLocationStore,
    KubernetesAuthenticationError,
    KubernetesClients,
    load_kubernetes_clients,
)
from .logging_setup import configure_logging
from .manager import RepositoryManager
from .reconciler import BackupRepoReconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControllerComponents:
    manager: RepositoryManager
    reconciler: BackupRepoReconciler
    controller: RepositoryController


def build_components(config: ControllerConfig, clients: KubernetesClients) -> ControllerComponents:
    repositories = BackupRepositoryStore(clients.custom_api)
    locations = BackupStorageLocationStore(clients.custom_api)
    credentials = SecretFileStore(
        core_api=clients.core_api,
        namespace=config.namespace,
        directory=config.credentials_dir,
    )
    executor = RepositoryExecutor(
        namespace=config.namespace,
        credentials=credentials,
        locations=locations,
        restic_binary=config.restic_binary,
        cache_dir=config.restic_cache_dir,
        scratch_dir=config.credentials_dir,
        timeout_seconds=config.command_timeout_seconds,
    )
    manager = RepositoryManager(
        namespace=config.namespace,
        executor=executor,
        ensurer=RepositoryEnsurer(store=repositories, timeout_seconds=config.ready_wait_timeout_seconds),
    )
    override = (
        timedelta(seconds=config.maintenance_frequency_seconds)
        if config.maintenance_frequency_seconds > 0
        else None
    )
    reconciler = BackupRepoReconciler(
        repositories=repositories,
        locations=locations,
        manager=manager,
        maintenance_frequency=override,
    )
    controller = RepositoryController(
        reconciler=reconciler,
        repositories=repositories,
        namespace=config.namespace,
        custom_api=clients.custom_api,
        workers=config.workers,
        resync_period_seconds=config.resync_period_seconds,
    )
    return ControllerComponents(manager=manager, reconciler=reconciler, controller=controller)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile backup repositories and run their maintenance")
    parser.add_argument("-c", "--config", help="Path to a YAML config file (overrides NKRC_* environment)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as error:
        print(f"invalid configuration: {error}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return 3

    components = build_components(config, clients)
    controller = components.controller

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, stopping", signum)
        controller.stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock
import logging

import pytest

from nerdy_k8s_repo_controller import main as main_module
from nerdy_k8s_repo_controller.config import ControllerConfig
from nerdy_k8s_repo_controller.k8s import KubernetesAuthenticationError, KubernetesClients
from nerdy_k8s_repo_controller.logging_setup import configure_logging


def _clients() -> KubernetesClients:
    return KubernetesClients(api_client=Mock(), core_api=Mock(), custom_api=Mock())


def test_build_components_wires_shared_manager_and_override(tmp_path: Path) -> None:
    config = ControllerConfig(
        namespace="velero",
        maintenance_frequency_seconds=3600,
        workers=3,
        credentials_dir=tmp_path,
    )

    components = main_module.build_components(config, _clients())

    assert components.reconciler.manager is components.manager
    assert components.reconciler.maintenance_frequency.total_seconds() == 3600
    assert components.controller.reconciler is components.reconciler
    assert components.controller.workers == 3
    assert components.manager.executor.scratch_dir == tmp_path


def test_build_components_without_override_leaves_choice_to_backend(tmp_path: Path) -> None:
    config = ControllerConfig(maintenance_frequency_seconds=0, credentials_dir=tmp_path)

    components = main_module.build_components(config, _clients())

    assert components.reconciler.maintenance_frequency is None


def test_main_with_invalid_config_returns_2(tmp_path: Path, capsys) -> None:
    config_file = tmp_path / "controller.yaml"
    config_file.write_text("workers: 0\n", encoding="utf-8")

    assert main_module.main(["--config", str(config_file)]) == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_main_with_authentication_failure_returns_3(monkeypatch) -> None:
    def _fail(**_kwargs) -> KubernetesClients:
        raise KubernetesAuthenticationError("no kubeconfig")

    monkeypatch.setattr(main_module, "load_kubernetes_clients", _fail)
    monkeypatch.setattr(main_module, "configure_logging", lambda level: None)

    assert main_module.main([]) == 3


def test_configure_logging_with_unknown_level_raises() -> None:
    with pytest.raises(ValueError, match="unknown log level"):
        configure_logging("LOUD")


def test_configure_logging_sets_root_level() -> None:
    configure_logging("debug")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.INFO
    configure_logging("INFO")

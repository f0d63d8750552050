from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from job_watcher.src.pvc_check import check_pvc_available, main


def make_pod(name: str, phase: str = "Running", claims: tuple[str, ...] = ()) -> SimpleNamespace:
    volumes = [
        SimpleNamespace(persistent_volume_claim=SimpleNamespace(claim_name=claim))
        for claim in claims
    ]
    volumes.append(SimpleNamespace(persistent_volume_claim=None))
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(phase=phase),
        spec=SimpleNamespace(volumes=volumes),
    )


def make_core_api(pods: list[SimpleNamespace] | None = None) -> MagicMock:
    core_api = MagicMock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=pods or [])
    return core_api


def test_missing_namespace_fails_before_other_calls() -> None:
    core_api = make_core_api()
    core_api.read_namespace.side_effect = ApiException(status=404, reason="Not Found")

    result = check_pvc_available(core_api, "data-namespace", "data-pvc")

    assert not result.ok
    assert result.messages == ["Error: Namespace data-namespace does not exist. Not Found"]
    core_api.read_namespaced_persistent_volume_claim.assert_not_called()


def test_missing_claim_fails() -> None:
    core_api = make_core_api()
    core_api.read_namespaced_persistent_volume_claim.side_effect = ApiException(
        status=404, reason="Not Found"
    )

    result = check_pvc_available(core_api, "data-namespace", "data-pvc")

    assert not result.ok
    assert result.messages == [
        "Error: PVC data-pvc does not exist in namespace data-namespace. Not Found"
    ]
    core_api.list_namespaced_pod.assert_not_called()


def test_pod_list_error_fails() -> None:
    core_api = make_core_api()
    core_api.list_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

    result = check_pvc_available(core_api, "data-namespace", "data-pvc")

    assert not result.ok
    assert "unable to list pods" in result.messages[-1]


def test_active_pod_using_claim_blocks_start() -> None:
    core_api = make_core_api(
        pods=[
            make_pod("importer-1", claims=("data-pvc",)),
            make_pod("web-1", claims=("other-pvc",)),
        ]
    )

    result = check_pvc_available(core_api, "data-namespace", "data-pvc", "importer-2")

    assert not result.ok
    assert result.active_pods == ["importer-1"]
    assert result.messages == [
        "Checking for pods actively using data-pvc, excluding current pod importer-2:",
        "importer-1",
        "Error: active pods found using PVC. Exiting to prevent job start...",
    ]


@pytest.mark.parametrize("phase", ["Succeeded", "Failed", "Unknown"])
def test_finished_pods_do_not_block(phase: str) -> None:
    core_api = make_core_api(pods=[make_pod("importer-1", phase=phase, claims=("data-pvc",))])

    result = check_pvc_available(core_api, "data-namespace", "data-pvc")

    assert result.ok
    assert result.active_pods == []


def test_pending_pod_blocks_start() -> None:
    core_api = make_core_api(pods=[make_pod("importer-1", phase="Pending", claims=("data-pvc",))])

    result = check_pvc_available(core_api, "data-namespace", "data-pvc")

    assert not result.ok


def test_current_pod_is_excluded() -> None:
    core_api = make_core_api(pods=[make_pod("importer-2", claims=("data-pvc",))])

    result = check_pvc_available(core_api, "data-namespace", "data-pvc", "importer-2")

    assert result.ok
    assert result.messages[-1] == "No active pods found using PVC. Proceeding with job..."


def test_pod_without_volumes_is_ignored() -> None:
    pod = SimpleNamespace(
        metadata=SimpleNamespace(name="bare"),
        status=SimpleNamespace(phase="Running"),
        spec=SimpleNamespace(volumes=None),
    )

    result = check_pvc_available(make_core_api(pods=[pod]), "data-namespace", "data-pvc")

    assert result.ok


class TestMain:
    def test_main_uses_env_and_exits_zero_when_free(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("PVC_NAMESPACE", "data-namespace")
        monkeypatch.setenv("PVC_NAME", "data-pvc")
        monkeypatch.setenv("CURRENT_POD_NAME", "importer-2")
        core_api = make_core_api()

        with (
            patch("job_watcher.src.pvc_check.load_kube_configuration") as mock_load,
            patch("job_watcher.src.pvc_check.CoreV1Api", return_value=core_api),
        ):
            exit_code = main(["--kubeconfig", "/tmp/kubeconfig"])

        assert exit_code == 0
        mock_load.assert_called_once_with(kubeconfig="/tmp/kubeconfig")
        core_api.read_namespaced_persistent_volume_claim.assert_called_once_with(
            name="data-pvc", namespace="data-namespace"
        )
        out = capsys.readouterr().out
        assert "excluding current pod importer-2" in out
        assert "Proceeding with job" in out

    def test_main_defaults_and_exits_one_when_busy(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        for name in ("PVC_NAMESPACE", "PVC_NAME", "CURRENT_POD_NAME"):
            monkeypatch.delenv(name, raising=False)
        core_api = make_core_api(pods=[make_pod("app-0", claims=("default-app-pvc",))])

        with (
            patch("job_watcher.src.pvc_check.load_kube_configuration"),
            patch("job_watcher.src.pvc_check.CoreV1Api", return_value=core_api),
        ):
            exit_code = main([])

        assert exit_code == 1
        core_api.read_namespace.assert_called_once_with(name="default-namespace")
        assert "app-0" in capsys.readouterr().out

    def test_main_reports_missing_kube_configuration(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with patch(
            "job_watcher.src.pvc_check.load_kube_configuration",
            side_effect=ConfigException("no config"),
        ):
            exit_code = main([])

        assert exit_code == 1
        assert "unable to load Kubernetes configuration" in capsys.readouterr().out

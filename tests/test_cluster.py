from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from k8s_stubs import FakeAppsApi, FakeCluster, FakeCoreApi, api_error
from podplane.cluster import ClusterDriver, platform_message
from podplane.errors import ResourceCreationError, StatusQueryError
from podplane.models import ResourceOutcome
from podplane.retry import RetryPolicy
from podplane.templates import ManifestRenderer

USER = "user-1a2b3c4d"


@pytest.fixture()
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture()
def driver(cluster: FakeCluster) -> ClusterDriver:
    return ClusterDriver(
        FakeCoreApi(cluster),
        FakeAppsApi(cluster),
        ManifestRenderer(namespace="user-pods"),
        namespace="user-pods",
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
        sleep=lambda _delay: None,
    )


def test_create_instance_creates_claim_workload_and_service(driver, cluster) -> None:
    result = driver.create_instance(USER, "basic", 31000)

    assert [method for method, _ in cluster.calls] == [
        "create_namespaced_persistent_volume_claim",
        "create_namespaced_deployment",
        "create_namespaced_service",
    ]
    assert cluster.has("pvc", f"{USER}-n8n-storage")
    assert cluster.has("deployment", f"{USER}-n8n-basic")
    assert cluster.has("service", f"{USER}-n8n-service")
    assert result.service["spec"]["ports"][0]["nodePort"] == 31000
    assert result.workload["metadata"]["namespace"] == "user-pods"


def test_existing_volume_claim_is_reused(driver, cluster) -> None:
    cluster.objects[("pvc", f"{USER}-n8n-storage")] = {"metadata": {"name": f"{USER}-n8n-storage"}}

    result = driver.create_instance(USER, "pro", 31000)

    assert result.volume_claim is None
    assert cluster.has("deployment", f"{USER}-n8n-pro")


def test_claim_failure_aborts_before_workload(driver, cluster) -> None:
    cluster.fail("create_namespaced_persistent_volume_claim", api_error(403, "forbidden by quota"))

    with pytest.raises(ResourceCreationError) as excinfo:
        driver.create_instance(USER, "basic", 31000)

    assert "forbidden by quota" in excinfo.value.platform_message
    assert excinfo.value.category == "cluster"
    assert all(method != "create_namespaced_deployment" for method, _ in cluster.calls)


def test_transient_claim_failure_is_retried(driver, cluster) -> None:
    cluster.fail("create_namespaced_persistent_volume_claim", api_error(503), ConnectionError("reset"))

    driver.create_instance(USER, "basic", 31000)

    claim_calls = [m for m, _ in cluster.calls if m == "create_namespaced_persistent_volume_claim"]
    assert len(claim_calls) == 3
    assert cluster.has("service", f"{USER}-n8n-service")


def test_service_failure_rolls_back_created_resources(driver, cluster) -> None:
    cluster.fail("create_namespaced_service", api_error(422, "provided port is already allocated"))

    with pytest.raises(ResourceCreationError) as excinfo:
        driver.create_instance(USER, "basic", 31000)

    assert "already allocated" in str(excinfo.value)
    assert not cluster.has("deployment", f"{USER}-n8n-basic")
    assert not cluster.has("pvc", f"{USER}-n8n-storage")
    assert not cluster.has("service", f"{USER}-n8n-service")


def test_unexpected_error_still_rolls_back_created_resources(driver, cluster) -> None:
    cluster.fail("create_namespaced_service", ValueError("Invalid value for `spec`, must not be `None`"))

    with pytest.raises(ValueError):
        driver.create_instance(USER, "basic", 31000)

    assert not cluster.has("deployment", f"{USER}-n8n-basic")
    assert not cluster.has("pvc", f"{USER}-n8n-storage")
    assert cluster.objects == {}


def test_rollback_keeps_a_claim_it_did_not_create(driver, cluster) -> None:
    claim = f"{USER}-n8n-storage"
    cluster.objects[("pvc", claim)] = {"metadata": {"name": claim}}
    cluster.fail("create_namespaced_deployment", api_error(500, "admission webhook down"))

    with pytest.raises(ResourceCreationError):
        driver.create_instance(USER, "basic", 31000)

    assert cluster.has("pvc", claim)


def test_delete_instance_removes_everything(driver, cluster) -> None:
    driver.create_instance(USER, "pro", 31000)

    result = driver.delete_instance(USER)

    outcomes = {step.name: step.outcome for step in result.steps}
    assert outcomes == {
        f"{USER}-n8n-basic": ResourceOutcome.NOT_FOUND,
        f"{USER}-n8n-pro": ResourceOutcome.DELETED,
        f"{USER}-n8n-service": ResourceOutcome.DELETED,
        f"{USER}-n8n-storage": ResourceOutcome.DELETED,
    }
    assert result.success
    assert result.complete
    assert cluster.objects == {}


def test_delete_instance_is_idempotent(driver, cluster) -> None:
    driver.create_instance(USER, "basic", 31000)
    driver.delete_instance(USER)

    again = driver.delete_instance(USER)

    assert all(step.outcome is ResourceOutcome.NOT_FOUND for step in again.steps)
    assert not again.success
    assert again.complete


def test_delete_step_errors_do_not_stop_teardown(driver, cluster) -> None:
    driver.create_instance(USER, "basic", 31000)
    cluster.fail("delete_namespaced_service", api_error(403, "forbidden"))

    result = driver.delete_instance(USER)

    assert not result.complete
    assert [step.name for step in result.errors] == [f"{USER}-n8n-service"]
    assert "forbidden" in result.errors[0].message
    assert not cluster.has("pvc", f"{USER}-n8n-storage")
    assert not cluster.has("deployment", f"{USER}-n8n-basic")


def test_list_instance_status_uses_user_label(driver, cluster) -> None:
    cluster.add_pod(f"{USER}-n8n-basic-5d9f7c-abcde", USER, phase="Running", ready=True)
    cluster.add_pod("user-other-n8n-pro-1111-22222", "user-other", phase="Pending", ready=False)

    statuses = driver.list_instance_status(USER)

    assert len(statuses) == 1
    assert statuses[0].phase == "Running"
    assert statuses[0].ready is True
    assert ("list_namespaced_pod", f"user={USER}") in cluster.calls


def test_list_instance_status_failure(driver, cluster) -> None:
    cluster.fail("list_namespaced_pod", api_error(401, "Unauthorized"))
    with pytest.raises(StatusQueryError):
        driver.list_instance_status(USER)


def test_cluster_resources_counts_nodes_and_running_pods(driver, cluster) -> None:
    cluster.add_pod("a", "user-a", phase="Running")
    cluster.add_pod("b", "user-b", phase="Pending")

    resources = driver.cluster_resources()

    assert resources.node_count == 1
    assert resources.total_pods == 2
    assert resources.running_pods == 1
    assert not resources.degraded


def test_cluster_resources_degrade_to_zero(driver, cluster) -> None:
    cluster.add_pod("a", "user-a", phase="Running")
    cluster.fail("list_node", ConnectionError("connection refused"))

    resources = driver.cluster_resources()

    assert resources.node_count == 0
    assert resources.total_pods == 1
    assert resources.degraded


def test_platform_message_reads_api_body() -> None:
    assert platform_message(api_error(409, "already exists")) == "409 Stubbed: already exists"
    assert platform_message(api_error(500)) == "500 Stubbed"
    assert platform_message(TimeoutError("timed out")) == "timed out"

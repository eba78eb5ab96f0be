"""Tests for the terraform, kubectl and object storage providers."""
from __future__ import annotations

import base64
from pathlib import Path

import pytest

from conftest import FakeRunner
from platformctl.providers import (
    BucketStatus,
    KubectlError,
    KubectlProvider,
    ObjectStorageAuthError,
    ObjectStorageError,
    ObjectStorageProvider,
    TerraformError,
    TerraformProvider,
)
from platformctl.providers.object_storage import credentials_from_env
from platformctl.providers.terraform import VAR_FILE_NAME

PLAN_JSON = {
    "resource_changes": [
        {"address": "scaleway_k8s_cluster.main", "change": {"actions": ["create"]}},
        {"address": "scaleway_k8s_pool.main", "change": {"actions": ["update"]}},
        {"address": "scaleway_vpc.main", "change": {"actions": ["delete", "create"]}},
        {"address": "data.scaleway_account.current", "change": {"actions": ["read"]}},
        {"address": "scaleway_lb.old", "change": {"actions": ["delete"]}},
    ]
}


def _terraform(runner: FakeRunner) -> TerraformProvider:
    return TerraformProvider(runner, env={"AWS_ACCESS_KEY_ID": "key"})  # type: ignore[arg-type]


def _storage(runner: FakeRunner) -> ObjectStorageProvider:
    return ObjectStorageProvider(
        runner,  # type: ignore[arg-type]
        endpoint="https://s3.fr-par.scw.cloud",
        region="fr-par",
    )


# terraform -----------------------------------------------------------------


def test_plan_summarises_resource_changes(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """Plans are saved to a file and summarised from ``show -json``."""
    fake_runner.on("terraform", "show", "-json", stdout=PLAN_JSON)
    provider = _terraform(fake_runner)

    summary = provider.plan(
        tmp_path, tmp_path / "infra.tfplan", var_file=tmp_path / VAR_FILE_NAME
    )

    assert (summary.add, summary.change, summary.destroy) == (2, 1, 2)
    assert summary.describe() == "2 to add, 1 to change, 2 to destroy"
    assert "data.scaleway_account.current" not in summary.addresses
    plan_call = fake_runner.calls("terraform", "plan")[0]
    assert f"-out={tmp_path / 'infra.tfplan'}" in plan_call.argv
    assert f"-var-file={tmp_path / VAR_FILE_NAME}" in plan_call.argv
    assert plan_call.cwd == tmp_path
    assert plan_call.env["TF_IN_AUTOMATION"] == "1"
    assert plan_call.env["AWS_ACCESS_KEY_ID"] == "key"


def test_output_only_plan_is_not_empty(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """A plan that only adds an output still needs applying."""
    fake_runner.on(
        "terraform",
        "show",
        "-json",
        stdout={
            "resource_changes": [],
            "output_changes": {
                "kubeconfig": {"actions": ["create"]},
                "cluster_id": {"actions": ["no-op"]},
            },
        },
    )

    summary = _terraform(fake_runner).plan(tmp_path, tmp_path / "infra.tfplan")

    assert summary.outputs == 1
    assert not summary.is_empty
    assert summary.describe() == "0 to add, 0 to change, 0 to destroy, 1 output changes"
    assert summary.to_dict()["outputs"] == 1


def test_destroy_skips_apply_for_empty_plan(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """An empty destroy plan is not applied."""
    provider = _terraform(fake_runner)

    summary = provider.destroy(tmp_path, targets=["module.cluster"])

    assert summary.is_empty
    plan_call = fake_runner.calls("terraform", "plan")[0]
    assert "-destroy" in plan_call.argv
    assert "-target=module.cluster" in plan_call.argv
    assert fake_runner.calls("terraform", "apply") == []


def test_destroy_applies_non_empty_plan(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """A destroy plan with changes is applied from the saved plan file."""
    fake_runner.on("terraform", "show", "-json", stdout=PLAN_JSON)
    provider = _terraform(fake_runner)

    provider.destroy(tmp_path)

    (apply_call,) = fake_runner.calls("terraform", "apply")
    assert apply_call.argv[-1] == str(tmp_path / "destroy.tfplan")
    assert "-auto-approve" in apply_call.argv


def test_failures_raise_terraform_error(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """A failing command is reported with its sub-command and diagnostic."""
    fake_runner.on("terraform", "apply", returncode=1, stderr="Error: quota exceeded")
    provider = _terraform(fake_runner)

    with pytest.raises(TerraformError, match="terraform apply failed .*quota exceeded"):
        provider.apply(tmp_path, tmp_path / "plan")


def test_outputs_unwrap_values(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """``output -json`` entries are reduced to their values."""
    fake_runner.on(
        "terraform",
        "output",
        "-json",
        stdout={"kubeconfig": {"value": "apiVersion: v1\n"}, "cluster_id": {"value": "abc"}},
    )

    outputs = _terraform(fake_runner).outputs(tmp_path)

    assert outputs == {"kubeconfig": "apiVersion: v1\n", "cluster_id": "abc"}


def test_state_list_treats_missing_state_as_empty(
    fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A missing state is an empty list; other failures raise."""
    provider = _terraform(fake_runner)
    fake_runner.on("terraform", "state", "list", returncode=1, stderr="No state file was found!")
    assert provider.state_list(tmp_path) == []

    fake_runner.on("terraform", "state", "list", stdout="module.a.res\n\nmodule.b.res\n")
    assert provider.state_list(tmp_path) == ["module.a.res", "module.b.res"]

    fake_runner.on("terraform", "state", "list", returncode=1, stderr="backend unreachable")
    with pytest.raises(TerraformError, match="backend unreachable"):
        provider.state_list(tmp_path)


def test_state_pull_writes_destination(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """State is streamed into the destination file."""
    fake_runner.on("terraform", "state", "pull", stdout='{"version": 4}')
    destination = tmp_path / "archive" / "infra.tfstate"

    _terraform(fake_runner).state_pull(tmp_path, destination)

    assert destination.read_text(encoding="utf-8") == '{"version": 4}'


def test_write_var_file_is_sorted_json(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """Variables are written as JSON tfvars in the working directory."""
    path = _terraform(fake_runner).write_var_file(tmp_path, {"b": 1, "a": True})

    assert path == tmp_path / VAR_FILE_NAME
    assert path.read_text(encoding="utf-8") == '{\n  "a": true,\n  "b": 1\n}\n'


# kubectl -------------------------------------------------------------------


def test_kubectl_get_scopes_and_parses(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """Queries carry the kubeconfig and namespace and return parsed items."""
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("apiVersion: v1\n", encoding="utf-8")
    fake_runner.on(
        "kubectl",
        "get",
        "pods",
        stdout={"items": [{"metadata": {"name": "coder-0"}}, "junk"]},
    )
    provider = KubectlProvider(fake_runner).with_kubeconfig(kubeconfig)  # type: ignore[arg-type]

    assert provider.configured
    assert provider.names("pods", namespace="coder") == ["coder-0"]
    assert fake_runner.argvs[-1] == (
        "kubectl", "--kubeconfig", str(kubeconfig), "get", "pods", "-n", "coder", "-o", "json",
    )


def test_kubectl_reachability(fake_runner: FakeRunner, tmp_path: Path) -> None:
    """A missing kubeconfig or failing cluster-info means unreachable."""
    provider = KubectlProvider(fake_runner)  # type: ignore[arg-type]
    assert provider.with_kubeconfig(tmp_path / "missing").cluster_reachable() is False
    assert fake_runner.commands == []

    assert provider.cluster_reachable() is True
    fake_runner.on("cluster-info", returncode=1, stderr="connection refused")
    assert provider.cluster_reachable() is False


def test_kubectl_delete_and_wait_arguments(fake_runner: FakeRunner) -> None:
    """Deletes ignore missing objects and waits report expiry as False."""
    provider = KubectlProvider(fake_runner)  # type: ignore[arg-type]

    provider.delete("pvc", all_objects=True, namespace="coder", grace_period=30, timeout=120)
    assert fake_runner.argvs[-1] == (
        "kubectl", "delete", "pvc", "--all", "-n", "coder",
        "--ignore-not-found", "--grace-period=30", "--timeout=120s",
    )
    assert fake_runner.commands[-1].timeout == 150

    fake_runner.on("wait", returncode=1, stderr="timed out waiting")
    assert provider.wait(
        "pods", condition="delete", namespace="coder", timeout=60, all_objects=True
    ) is False


def test_kubectl_exists_and_secret_values(fake_runner: FakeRunner) -> None:
    """NotFound means absent; secrets are base64-decoded."""
    provider = KubectlProvider(fake_runner)  # type: ignore[arg-type]
    fake_runner.on("get", "secret", "missing", returncode=1, stderr='Error (NotFound): "missing"')
    assert provider.exists("secret", "missing", namespace="coder") is False

    encoded = base64.b64encode(b"s3cret").decode("ascii")
    fake_runner.on("get", "secret", "db", stdout={"data": {"password": encoded}})
    assert provider.secret_values("db", namespace="coder") == {"password": "s3cret"}

    fake_runner.on("get", "secret", "db", stdout={"data": {"password": "abc"}})
    with pytest.raises(KubectlError, match="not valid base64"):
        provider.secret_values("db", namespace="coder")


def test_kubectl_run_pod_builds_throwaway_pod(fake_runner: FakeRunner) -> None:
    """Throwaway pods are removed on exit and run the given command."""
    provider = KubectlProvider(fake_runner)  # type: ignore[arg-type]

    provider.run_pod(
        "pg-dump",
        image="postgres:16",
        namespace="coder",
        command=["pg_dump", "coder"],
        env={"PGPASSWORD": "pw"},
    )

    argv = fake_runner.argvs[-1]
    assert argv[:6] == ("kubectl", "run", "pg-dump", "--rm", "-i", "--quiet")
    assert "--env=PGPASSWORD=pw" in argv
    assert argv[-3:] == ("--", "pg_dump", "coder")


# object storage ------------------------------------------------------------


def test_bucket_status_classification(fake_runner: FakeRunner) -> None:
    """head-bucket results map to present, missing or an auth error."""
    storage = _storage(fake_runner)
    assert storage.bucket_status("state") is BucketStatus.PRESENT
    assert fake_runner.argvs[-1][-4:] == (
        "--endpoint-url", "https://s3.fr-par.scw.cloud", "--region", "fr-par",
    )

    fake_runner.on("head-bucket", returncode=254, stderr="An error occurred (404) Not Found")
    assert storage.bucket_status("state") is BucketStatus.MISSING

    fake_runner.on("head-bucket", returncode=254, stderr="An error occurred (403) Forbidden")
    with pytest.raises(ObjectStorageAuthError):
        storage.bucket_status("state")

    fake_runner.on("head-bucket", returncode=255, stderr="Could not connect")
    with pytest.raises(ObjectStorageError, match="Could not connect"):
        storage.bucket_status("state")


def test_create_bucket_tolerates_existing(fake_runner: FakeRunner) -> None:
    """A bucket already owned by the caller counts as created."""
    fake_runner.on("create-bucket", returncode=254, stderr="BucketAlreadyOwnedByYou")
    storage = _storage(fake_runner)

    storage.create_bucket("state")
    storage.enable_versioning("state")

    assert "LocationConstraint=fr-par" in fake_runner.calls("create-bucket")[0].argv
    assert "Status=Enabled" in fake_runner.calls("put-bucket-versioning")[0].argv


def test_object_exists(fake_runner: FakeRunner) -> None:
    """head-object reports missing keys as False."""
    storage = _storage(fake_runner)
    assert storage.object_exists("state", "infra/terraform.tfstate") is True
    fake_runner.on("head-object", returncode=254, stderr="NoSuchKey")
    assert storage.object_exists("state", "infra/terraform.tfstate") is False


def test_credentials_from_env_maps_provider_keys() -> None:
    """Provider keys are exposed under the names the S3 CLI reads."""
    assert credentials_from_env({"SCW_ACCESS_KEY": "a", "SCW_SECRET_KEY": "b"}) == {
        "AWS_ACCESS_KEY_ID": "a",
        "AWS_SECRET_ACCESS_KEY": "b",
    }
    assert credentials_from_env({}) == {}

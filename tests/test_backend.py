"""Remote state container coordination tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeRunner
from platformctl.backend import (
    BackendAuthError,
    BackendError,
    StateBackendCoordinator,
)
from platformctl.config import AppConfig
from platformctl.environments import Environment, Layout, Phase
from platformctl.providers import ObjectStorageProvider
from platformctl.templates import TemplateEngine

BUCKET = "terraform-state-coder-dev"


def _coordinator(config: AppConfig, runner: FakeRunner) -> StateBackendCoordinator:
    storage = ObjectStorageProvider(
        runner,  # type: ignore[arg-type]
        endpoint=config.backend.endpoint,
        region=config.backend.region,
    )
    return StateBackendCoordinator(config, storage, TemplateEngine.with_overrides(None))


def test_existing_bucket_is_reused(config: AppConfig, fake_runner: FakeRunner) -> None:
    """An existing container is never re-created and phase keys are preferred."""
    coordinator = _coordinator(config, fake_runner)

    pointer = coordinator.ensure(Environment.DEV, Phase.APPLICATION)

    assert pointer.bucket == BUCKET
    assert pointer.key == "app/terraform.tfstate"
    assert pointer.layout is Layout.TWO_PHASE
    assert fake_runner.calls("create-bucket") == []


def test_missing_bucket_is_created_with_versioning(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """A missing container is created, versioned and then re-checked."""
    fake_runner.on("head-bucket", returncode=254, stderr="(404) Not Found", times=1)
    fake_runner.on("head-object", returncode=254, stderr="(404) Not Found")
    coordinator = _coordinator(config, fake_runner)

    pointer = coordinator.ensure(Environment.DEV, Phase.INFRASTRUCTURE)

    assert pointer.key == "infra/terraform.tfstate"
    create = fake_runner.position("create-bucket", "--bucket", BUCKET)
    versioning = fake_runner.position("put-bucket-versioning", "--bucket", BUCKET)
    assert 0 < create < versioning
    assert len(fake_runner.calls("head-bucket")) == 2


def test_legacy_key_is_detected_after_phase_key(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """The legacy single key is used only when the phase key is absent."""
    fake_runner.on("head-object", "--key", "infra/terraform.tfstate", returncode=254,
                   stderr="Not Found")
    coordinator = _coordinator(config, fake_runner)

    pointer = coordinator.ensure(Environment.DEV, Phase.INFRASTRUCTURE)

    assert pointer.layout is Layout.LEGACY
    assert pointer.key == "dev/terraform.tfstate"
    assert fake_runner.position("--key", "infra/terraform.tfstate") < fake_runner.position(
        "--key", "dev/terraform.tfstate"
    )


def test_forbidden_bucket_raises_auth_error(config: AppConfig, fake_runner: FakeRunner) -> None:
    """Rejected credentials surface as BackendAuthError."""
    fake_runner.on("head-bucket", returncode=254, stderr="An error occurred (403) Forbidden")

    with pytest.raises(BackendAuthError, match=BUCKET):
        _coordinator(config, fake_runner).ensure(Environment.DEV, Phase.INFRASTRUCTURE)


def test_unreachable_endpoint_raises_backend_error(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """Transport failures surface as BackendError and nothing is created."""
    fake_runner.on("head-bucket", returncode=255, stderr="Could not connect to the endpoint URL")

    with pytest.raises(BackendError, match="unreachable"):
        _coordinator(config, fake_runner).ensure(Environment.PROD, Phase.INFRASTRUCTURE)
    assert fake_runner.calls("create-bucket") == []


def test_write_backend_config_is_idempotent(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """The pointer file is rendered once and left alone when unchanged."""
    coordinator = _coordinator(config, fake_runner)
    pointer = coordinator.ensure(Environment.DEV, Phase.INFRASTRUCTURE)

    path, changed = coordinator.write_backend_config(pointer, tmp_path)
    assert changed
    assert f'bucket                      = "{BUCKET}"' in path.read_text(encoding="utf-8")

    _, changed_again = coordinator.write_backend_config(pointer, tmp_path)
    assert not changed_again


def test_remote_state_inputs_expose_read_only_pointer(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """The infrastructure pointer is exported as variables for the application phase."""
    pointer = _coordinator(config, fake_runner).ensure(Environment.DEV, Phase.INFRASTRUCTURE)

    assert pointer.remote_state_inputs() == {
        "infra_state_bucket": BUCKET,
        "infra_state_key": "infra/terraform.tfstate",
        "infra_state_region": "fr-par",
        "infra_state_endpoint": "https://s3.fr-par.scw.cloud",
    }


def test_describe_does_not_create(config: AppConfig, fake_runner: FakeRunner) -> None:
    """describe reports key presence and never creates a missing container."""
    fake_runner.on("head-bucket", returncode=254, stderr="NoSuchBucket")
    coordinator = _coordinator(config, fake_runner)

    report = coordinator.describe(Environment.STAGING)

    assert report["status"] == "missing"
    assert report["keys"] == {
        "infra/terraform.tfstate": None,
        "app/terraform.tfstate": None,
        "staging/terraform.tfstate": None,
    }
    assert fake_runner.calls("create-bucket") == []

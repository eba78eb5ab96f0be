"""Template engine tests."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest
from jinja2 import UndefinedError

from platformctl.templates import TemplateEngine


def _backend_context() -> dict[str, object]:
    return {
        "bucket": "terraform-state-coder-dev",
        "key": "infra/terraform.tfstate",
        "region": "fr-par",
        "endpoint": "https://s3.fr-par.scw.cloud",
    }


def test_render_backend_pointer() -> None:
    """The built-in backend template renders every pointer field."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string("backend.hcl.j2", _backend_context())

    assert 'bucket                      = "terraform-state-coder-dev"' in rendered
    assert 'key                         = "infra/terraform.tfstate"' in rendered
    assert 'endpoints                   = { s3 = "https://s3.fr-par.scw.cloud" }' in rendered


def test_missing_variables_are_errors() -> None:
    """Strict undefined handling surfaces missing context keys."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("backend.hcl.j2", {"bucket": "only"})


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates in the override directory take precedence over packaged ones."""
    overrides = tmp_path / "templates"
    overrides.mkdir()
    (overrides / "backend.hcl.j2").write_text("bucket = \"{{ bucket }}\"\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(overrides)

    rendered = engine.render_to_string("backend.hcl.j2", _backend_context())

    assert rendered == 'bucket = "terraform-state-coder-dev"\n'


def test_render_to_path_reports_changes_and_sets_mode(tmp_path: Path) -> None:
    """render_to_path only rewrites when content changes and applies the mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "infra" / "backend.hcl"

    assert engine.render_to_path("backend.hcl.j2", destination, _backend_context(), mode=0o600)
    assert stat.S_IMODE(destination.stat().st_mode) == 0o600
    assert not engine.render_to_path(
        "backend.hcl.j2", destination, _backend_context(), mode=0o600
    )

    changed = {**_backend_context(), "key": "app/terraform.tfstate"}
    assert engine.render_to_path("backend.hcl.j2", destination, changed, mode=0o600)
    assert "app/terraform.tfstate" in destination.read_text(encoding="utf-8")
    assert [path.name for path in destination.parent.iterdir()] == ["backend.hcl"]


def test_teardown_summary_lists_steps_and_leftovers() -> None:
    """The teardown summary template renders steps and remaining resources."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string(
        "teardown-summary.txt.j2",
        {
            "environment": "staging",
            "started_at": "2026-01-01T00:00:00Z",
            "finished_at": "2026-01-01T00:10:00Z",
            "operator": "ops",
            "state": "incomplete",
            "emergency": False,
            "force": True,
            "preserve_data": False,
            "backup": "pre-destroy-20260101-000000-staging",
            "steps": [
                {"name": "destroy-application", "status": "success", "detail": "1 to destroy"},
            ],
            "remaining": ["infrastructure:scaleway_k8s_cluster.main"],
        },
    )

    assert "staging" in rendered
    assert "destroy-application" in rendered
    assert "infrastructure:scaleway_k8s_cluster.main" in rendered
    assert "pre-destroy-20260101-000000-staging" in rendered

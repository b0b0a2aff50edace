from __future__ import annotations

from pathlib import Path

import pytest

from image_updater.applications import Application, ImageSpec, filter_applications_for_update
from image_updater.collaborators import OrchestratorError
from image_updater.inventory import InventoryClient, InventoryError, load_inventory


def _write_inventory(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


INVENTORY = "\n".join(
    [
        "[applications.web]",
        'repo_url = "https://git.example/gitops.git"',
        'path = "apps/web"',
        'labels = { team = "a", tier = "frontend" }',
        "",
        "[applications.web.write_back]",
        'method = "git"',
        'branch = "main"',
        'username = "bot"',
        'password_env = "WEB_GIT_TOKEN"',
        "",
        "[[applications.web.images]]",
        'name = "registry/web"',
        'current_tag = "1.0"',
        'constraint = "~1"',
        "",
        "[applications.api]",
        'type = "helm"',
        'labels = { team = "b" }',
        "",
        "[[applications.api.images]]",
        'name = "registry/api"',
        'helm_image_name = "image.repository"',
        'helm_image_tag = "image.tag"',
        "",
    ]
)


def test_load_inventory_orders_by_name(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEB_GIT_TOKEN", "s3cret")
    cfg = tmp_path / "apps.toml"
    _write_inventory(cfg, INVENTORY)

    apps = load_inventory(cfg)

    assert [a.name for a in apps] == ["api", "web"]
    web = apps[1]
    assert web.write_back.method == "git"
    assert web.write_back.credentials.username == "bot"
    assert web.write_back.credentials.password == "s3cret"
    assert web.images == (ImageSpec("registry/web", current_tag="1.0", constraint="~1"),)
    assert apps[0].app_type == "helm"
    assert apps[0].write_back.method == "argocd"


def test_inventory_validation_collects_errors(tmp_path: Path) -> None:
    cfg = tmp_path / "apps.toml"
    _write_inventory(
        cfg,
        "\n".join(
            [
                "[applications.web]",
                'type = "jsonnet"',
                "",
                "[applications.web.write_back]",
                'method = "git"',
                'password_env = "UNSET_TOKEN_FOR_TEST"',
                "",
                "[[applications.web.images]]",
                "current_tag = \"1.0\"",
                "",
            ]
        ),
    )

    with pytest.raises(InventoryError) as excinfo:
        load_inventory(cfg, environ={})
    message = str(excinfo.value)
    assert "applications.web.type" in message
    assert "applications.web.images[0].name: required field missing" in message
    assert "UNSET_TOKEN_FOR_TEST" in message
    assert "git write-back needs repo_url" in message


def test_inventory_client_filters_by_label(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEB_GIT_TOKEN", "s3cret")
    cfg = tmp_path / "apps.toml"
    _write_inventory(cfg, INVENTORY)
    client = InventoryClient(cfg)

    assert [a.name for a in client.list_applications("team=a")] == ["web"]
    assert [a.name for a in client.list_applications("team!=a")] == ["api"]
    assert [a.name for a in client.list_applications("tier")] == ["web"]
    assert len(client.list_applications(None)) == 2


def test_inventory_client_has_no_api_write_back(tmp_path: Path) -> None:
    client = InventoryClient(tmp_path / "apps.toml")
    with pytest.raises(OrchestratorError, match="does not support API write-back"):
        client.update_spec(Application(name="web"))


def test_filter_applications_for_update() -> None:
    apps = [
        Application(name="web-prod", images=(ImageSpec("registry/web"),)),
        Application(name="web-dev", images=()),
        Application(name="api-prod", images=(ImageSpec("registry/api"),)),
    ]

    assert [a.name for a in filter_applications_for_update(apps)] == ["web-prod", "api-prod"]
    assert [a.name for a in filter_applications_for_update(apps, ["web-*"])] == ["web-prod"]

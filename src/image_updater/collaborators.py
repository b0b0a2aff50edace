from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from image_updater.applications import Application, ImageSpec


class RegistryError(RuntimeError):
    pass


class OrchestratorError(RuntimeError):
    pass


class RegistryResolver(Protocol):
    """Tag lookup for one image.

    ``get_newest_version_from_tags`` returning ``None`` means no eligible
    newer tag exists. Failures are raised as ``RegistryError``.
    """

    def new_client(self, image: ImageSpec) -> Any: ...

    def get_tags(self, image: ImageSpec, client: Any, constraint: str | None) -> Sequence[str]: ...

    def get_newest_version_from_tags(
        self,
        image: ImageSpec,
        constraint: str | None,
        tags: Sequence[str],
    ) -> str | None: ...


class OrchestratorClient(Protocol):
    def list_applications(self, label_selector: str | None) -> Sequence[Application]: ...

    def set_kustomize_image(self, app: Application, image: ImageSpec, tag: str) -> None: ...

    def set_helm_image(self, app: Application, image: ImageSpec, tag: str) -> None: ...

    def update_spec(self, app: Application) -> None: ...

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Protocol

from image_updater.applications import Application, ChangeEntry
from image_updater.collaborators import OrchestratorClient, RegistryResolver
from image_updater.manifests import select_applier
from image_updater.repo_writer import WriteBackError, WriteIntent

logger = logging.getLogger(__name__)


class IntentSink(Protocol):
    def submit(self, intent: WriteIntent) -> Future: ...


@dataclass(frozen=True, slots=True)
class AppUpdateResult:
    application: str
    images_considered: int = 0
    images_updated: int = 0
    images_skipped: int = 0
    errors: int = 0
    write_future: Future | None = None

    def with_write_failure(self) -> AppUpdateResult:
        return replace(self, errors=self.errors + 1, images_updated=0, write_future=None)


def _resolve_changes(app: Application, resolver: RegistryResolver) -> tuple[list[ChangeEntry], int, int]:
    changes: list[ChangeEntry] = []
    skipped = 0
    errors = 0
    for image in app.images:
        try:
            client = resolver.new_client(image)
        except Exception as e:
            logger.error("Could not create registry client: application=%s image=%s: %s", app.name, image.name, e)
            errors += 1
            continue
        try:
            tags = resolver.get_tags(image, client, image.constraint)
        except Exception as e:
            logger.error("Could not get tags from registry: application=%s image=%s: %s", app.name, image.name, e)
            errors += 1
            continue
        try:
            newest = resolver.get_newest_version_from_tags(image, image.constraint, tags)
        except Exception as e:
            logger.error(
                "Unable to find newest version from available tags: application=%s image=%s: %s",
                app.name,
                image.name,
                e,
            )
            errors += 1
            continue

        if newest is None:
            logger.debug("No eligible tag found: application=%s image=%s", app.name, image.name)
            skipped += 1
            continue
        if newest == image.current_tag:
            logger.debug(
                "Image already on latest allowed version: application=%s image=%s tag=%s",
                app.name,
                image.name,
                newest,
            )
            continue

        logger.info(
            "Setting new image to %s: application=%s old_tag=%s",
            image.with_tag(newest),
            app.name,
            image.current_tag or "<none>",
        )
        changes.append(ChangeEntry(image=image, old_tag=image.current_tag, new_tag=newest))
    return changes, skipped, errors


def _write_back_api(app: Application, changes: list[ChangeEntry], orchestrator: OrchestratorClient) -> None:
    for change in changes:
        if app.app_type == "helm":
            orchestrator.set_helm_image(app, change.image, change.new_tag)
        else:
            orchestrator.set_kustomize_image(app, change.image, change.new_tag)
    orchestrator.update_spec(app)


def update_application(
    app: Application,
    *,
    resolver: RegistryResolver,
    orchestrator: OrchestratorClient | None,
    writers: IntentSink | None,
    dry_run: bool = False,
) -> AppUpdateResult:
    """Check every image of ``app`` for a newer tag and hand off the write-back.

    Git write-back does not wait for the commit: the returned result carries
    the write future and the caller settles it.
    """
    changes, skipped, errors = _resolve_changes(app, resolver)
    result = AppUpdateResult(
        application=app.name,
        images_considered=len(app.images),
        images_updated=len(changes),
        images_skipped=skipped,
        errors=errors,
    )
    if not changes:
        return result

    if dry_run:
        logger.info("Dry run - not writing %d change(s) for application=%s", len(changes), app.name)
        return result

    write_back = app.write_back
    if write_back.method == "git":
        if writers is None:
            logger.error("No repository writer configured: application=%s", app.name)
            return replace(result, errors=result.errors + 1, images_updated=0)
        applier = select_applier(
            app_name=app.name,
            app_type=app.app_type,
            app_path=app.path,
            kustomize_base=write_back.kustomize_base,
            helm_values=write_back.helm_values,
            target=write_back.target,
            changes=changes,
        )
        if not write_back.repo_url:
            write_back = replace(write_back, repo_url=app.repo_url)
        intent = WriteIntent(
            application=app.name,
            write_back=write_back,
            changes=tuple(changes),
            applier=applier,
        )
        try:
            future = writers.submit(intent)
        except WriteBackError as e:
            logger.error("Could not queue write-back: application=%s: %s", app.name, e)
            return replace(result, errors=result.errors + 1, images_updated=0)
        return replace(result, write_future=future)

    if orchestrator is None:
        logger.error("No orchestrator client configured: application=%s", app.name)
        return replace(result, errors=result.errors + 1, images_updated=0)
    try:
        _write_back_api(app, changes, orchestrator)
    except Exception as e:
        logger.error("Could not update application spec: application=%s: %s", app.name, e)
        return replace(result, errors=result.errors + 1, images_updated=0)
    logger.info("Successfully updated application=%s", app.name)
    return result

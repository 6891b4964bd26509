#!/usr/bin/env python3
"""
Docker Compose and Standalone Container Updater

Pulls the images of every Compose project under a base path and of every
standalone container, recreates whatever runs on an image whose content
identity changed, and finally prunes unused images, containers, networks
and volumes.
"""

__version__ = "1.0.0"

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests

from compose_driver import (
    ComposeDriver,
    ComposeError,
    ProjectDescriptor,
    detect_compose_command,
    discover_projects,
)
from docker_api import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    DockerClient,
    ImageResolutionError,
    PullError,
    container_name,
    image_reference,
)
from runspec import ExtractionError, RunSpec, extract_run_spec

BANNER = "=" * 46
RULE = "-" * 46

# Errors that make a single project or container fail without ending the run
UNIT_ERRORS = (requests.RequestException, PullError, ImageResolutionError)


class SweepError(Exception):
    """The final prune pass failed; the runtime is considered unhealthy."""


class Scope(Enum):
    PROJECT = 'project'
    STANDALONE = 'standalone'


class Action(Enum):
    UPDATED = 'Updated'
    UP_TO_DATE = 'UpToDate'
    SKIPPED = 'Skipped'
    FAILED = 'Failed'


@dataclass(frozen=True)
class UpdateOutcome:
    scope: Scope
    identifier: str
    action: Action
    detail: str = ''


@dataclass(frozen=True)
class ChangeResult:
    changed: bool
    before: Optional[str]
    after: str


@dataclass(frozen=True)
class ServiceStatus:
    service_name: str
    container_id: Optional[str] = None
    image_reference: Optional[str] = None
    image_id_before: Optional[str] = None
    image_id_after: Optional[str] = None
    is_running: bool = False
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        if self.error is not None or not self.is_running:
            return False
        return not self.image_id_before or self.image_id_before != self.image_id_after


@dataclass(frozen=True)
class ProjectEvaluation:
    statuses: Tuple[ServiceStatus, ...] = ()
    has_updates: bool = False
    containers_not_running: bool = False

    @property
    def needs_restart(self) -> bool:
        return self.has_updates or self.containers_not_running

    @property
    def failures(self) -> Tuple[ServiceStatus, ...]:
        return tuple(s for s in self.statuses if s.error is not None)


@dataclass(frozen=True)
class ContainerSnapshot:
    container_id: str
    name: str
    image_reference: str
    image_id_before: Optional[str]
    image_id_after: str
    run_spec: RunSpec


@dataclass
class RunReport:
    outcomes: List[UpdateOutcome] = field(default_factory=list)
    space_reclaimed: int = 0

    def add(self, outcome: UpdateOutcome) -> UpdateOutcome:
        self.outcomes.append(outcome)
        return outcome

    def counts(self, scope: Scope) -> Dict[Action, int]:
        counter = Counter(o.action for o in self.outcomes if o.scope is scope)
        return {action: counter.get(action, 0) for action in Action}

    def by_scope(self, scope: Scope) -> List[UpdateOutcome]:
        return [o for o in self.outcomes if o.scope is scope]


def evaluate_services(services: Sequence[str],
                      status_of: Callable[[str], ServiceStatus]) -> ProjectEvaluation:
    """Fold over a project's services in listed order.

    Stops at the first service that is not running or runs on a changed
    image; either one means the whole project gets recreated. Services
    whose status could not be determined are recorded and the scan goes on.
    """
    statuses: List[ServiceStatus] = []
    for service in services:
        status = status_of(service)
        statuses.append(status)
        if status.error is not None:
            continue
        if not status.is_running:
            return ProjectEvaluation(tuple(statuses), containers_not_running=True)
        if status.changed:
            return ProjectEvaluation(tuple(statuses), has_updates=True)
    return ProjectEvaluation(tuple(statuses))


class ContainerUpdater:
    def __init__(self, docker: DockerClient, compose: Optional[ComposeDriver] = None,
                 dry_run: bool = False):
        """
        Initialize the updater.

        Args:
            docker: Engine API client
            compose: Compose driver, or None when no compose binary is installed
            dry_run: If True, pull and compare but do not recreate or prune anything
        """
        self._docker = docker
        self._compose = compose
        self.dry_run = dry_run
        self.logger = logging.getLogger('ContainerUpdater')

    # -- image change detection ------------------------------------------

    def detect_change(self, reference: str, container_id: str, pull: bool = True) -> ChangeResult:
        """Compare the image a container runs on with what ``reference`` now resolves to.

        Identity is the image ID, never the tag. A container without a
        recorded image ID always counts as changed. Raises
        ImageResolutionError when the reference resolves to nothing after
        the pull.
        """
        before = self._docker.inspect_container(container_id).get('Image') or None
        if pull:
            self._docker.pull_image(reference)
        after = self._docker.image_id(reference)
        return ChangeResult(changed=before is None or before != after, before=before, after=after)

    # -- compose projects -------------------------------------------------

    def _service_status(self, project: ProjectDescriptor, service: str) -> ServiceStatus:
        try:
            ids = sorted(self._docker.list_container_ids([
                f"{COMPOSE_PROJECT_LABEL}={project.name}",
                f"{COMPOSE_SERVICE_LABEL}={service}",
            ]))
        except requests.RequestException as e:
            self.logger.error(f"Failed to list containers for service '{service}': {e}")
            return ServiceStatus(service, error=str(e))

        if not ids:
            self.logger.info(f"Service '{service}' is not running.")
            return ServiceStatus(service)

        container_id = ids[0]
        try:
            reference = image_reference(self._docker.inspect_container(container_id))
        except requests.RequestException as e:
            self.logger.error(
                f"Failed to get image name for container '{container_id[:12]}'. "
                f"Skipping service '{service}': {e}"
            )
            return ServiceStatus(service, container_id, is_running=True, error=str(e))
        if not reference:
            self.logger.error(f"Container '{container_id[:12]}' reports no image. Skipping service '{service}'.")
            return ServiceStatus(service, container_id, is_running=True, error="no image reference")

        self.logger.info(f"Checking service: {service}")
        self.logger.info(f"Image: {reference}")
        try:
            change = self.detect_change(reference, container_id, pull=False)
        except UNIT_ERRORS as e:
            self.logger.error(
                f"Failed to check image of container '{container_id[:12]}'. "
                f"Skipping service '{service}': {e}"
            )
            return ServiceStatus(service, container_id, reference, is_running=True, error=str(e))

        status = ServiceStatus(service, container_id, reference, change.before, change.after,
                               is_running=True)
        if status.changed:
            self.logger.info(f"A newer version is available for image '{reference}'.")
            self.logger.info(f"Image ID before pull: {change.before}")
            self.logger.info(f"Image ID after pull:  {change.after}")
        else:
            self.logger.info(f"Image '{reference}' is up-to-date.")
        return status

    def update_project(self, project: ProjectDescriptor) -> UpdateOutcome:
        """Pull a compose project and recreate it as a whole if anything is stale or stopped."""
        def outcome(action: Action, detail: str = '') -> UpdateOutcome:
            return UpdateOutcome(Scope.PROJECT, project.name, action, detail)

        self.logger.info(RULE)
        self.logger.info(f"Processing Compose file: {project.compose_file}")
        self.logger.info(RULE)

        if self._compose is None:
            self.logger.warning(f"No compose command available. Skipping project '{project.name}'.")
            return outcome(Action.SKIPPED, "compose unavailable")

        try:
            services = self._compose.services(project)
        except ComposeError as e:
            self.logger.error(f"Failed to get services from compose file '{project.compose_file}'. Skipping: {e}")
            return outcome(Action.SKIPPED, f"could not list services: {e}")
        if not services:
            self.logger.warning(f"No services found in compose file '{project.compose_file}'. Skipping.")
            return outcome(Action.SKIPPED, "no services")

        project = ProjectDescriptor(project.name, project.compose_file, project.working_dir, services)

        self.logger.info(f"Pulling latest images for project '{project.name}'...")
        try:
            self._compose.pull(project)
        except ComposeError as e:
            self.logger.error(f"Failed to pull images for project '{project.name}'. Skipping: {e}")
            return outcome(Action.SKIPPED, f"pull failed: {e}")
        self.logger.info(f"Image pull completed for project '{project.name}'.")

        evaluation = evaluate_services(
            project.services, lambda service: self._service_status(project, service)
        )

        if evaluation.needs_restart:
            reason = "images updated" if evaluation.has_updates else "containers not running"
            self.logger.info(f"Skipping further checks for project '{project.name}'.")
            if self.dry_run:
                self.logger.info(f"[DRY RUN] Would restart project '{project.name}' ({reason})")
                return outcome(Action.UPDATED, f"dry run: {reason}")

            self.logger.info(f"Updating and restarting services for project '{project.name}'...")
            try:
                self._compose.down(project)
            except ComposeError as e:
                self.logger.error(f"Failed to bring down services for project '{project.name}': {e}")
                return outcome(Action.FAILED, f"down failed: {e}")
            try:
                self._compose.up(project)
            except ComposeError as e:
                self.logger.error(f"Failed to bring up services for project '{project.name}': {e}")
                return outcome(Action.FAILED, f"up failed: {e}")
            self.logger.info(f"Services in project '{project.name}' have been updated.")
            return outcome(Action.UPDATED, reason)

        if evaluation.failures:
            names = ', '.join(s.service_name for s in evaluation.failures)
            self.logger.error(f"Could not determine image state of services in project '{project.name}': {names}")
            return outcome(Action.FAILED, f"unresolved services: {names}")

        self.logger.info(f"All services in project '{project.name}' are up-to-date and running.")
        return outcome(Action.UP_TO_DATE)

    # -- standalone containers --------------------------------------------

    def standalone_container_ids(self) -> List[str]:
        """Running containers that no compose project claims, sorted by ID."""
        running = set(self._docker.list_container_ids())
        compose_owned = set(self._docker.list_container_ids([COMPOSE_PROJECT_LABEL]))
        return sorted(running - compose_owned)

    def extract_run_spec(self, container_id: str) -> RunSpec:
        try:
            info = self._docker.inspect_container(container_id)
        except requests.RequestException as e:
            raise ExtractionError(f"Failed to inspect container '{container_id[:12]}': {e}") from e
        return extract_run_spec(info)

    def _recreate(self, snapshot: ContainerSnapshot) -> None:
        spec = snapshot.run_spec
        self.logger.info(f"Stopping container {snapshot.name}...")
        self._docker.stop_container(snapshot.container_id)
        self.logger.info(f"Removing container {snapshot.name}...")
        self._docker.remove_container(snapshot.container_id)

        self.logger.info(f"Running command: {spec.describe()}")
        new_id = self._docker.create_container(spec.name, spec.to_create_body())
        self._docker.start_container(new_id)

    def update_standalone(self, container_id: str) -> UpdateOutcome:
        """Replace one standalone container when its image has a new identity."""
        short_id = container_id[:12]
        try:
            info = self._docker.inspect_container(container_id)
        except requests.RequestException as e:
            self.logger.error(f"Failed to inspect container '{short_id}'. Skipping: {e}")
            return UpdateOutcome(Scope.STANDALONE, short_id, Action.FAILED, f"inspect failed: {e}")

        name = container_name(info) or short_id
        reference = image_reference(info)

        def outcome(action: Action, detail: str = '') -> UpdateOutcome:
            return UpdateOutcome(Scope.STANDALONE, name, action, detail)

        if not reference:
            self.logger.error(f"Failed to get image name for container '{name}'. Skipping.")
            return outcome(Action.FAILED, "no image reference")

        self.logger.info(f"Checking standalone container: {name}")
        self.logger.info(f"Image: {reference}")
        self.logger.info(f"Pulling latest image for '{reference}'...")
        try:
            change = self.detect_change(reference, container_id)
        except UNIT_ERRORS as e:
            self.logger.error(f"Failed to check image '{reference}'. Skipping container '{name}': {e}")
            return outcome(Action.FAILED, f"image check failed: {e}")
        self.logger.info(f"Image pull completed for '{reference}'.")

        if not change.changed:
            self.logger.info(f"Container '{name}' is up-to-date.")
            return outcome(Action.UP_TO_DATE)

        self.logger.info(f"A newer version is available for image '{reference}'.")
        self.logger.info(f"Image ID before pull: {change.before}")
        self.logger.info(f"Image ID after pull:  {change.after}")

        try:
            spec = self.extract_run_spec(container_id)
        except ExtractionError as e:
            self.logger.error(f"Cannot reconstruct configuration of '{name}', leaving it untouched: {e}")
            return outcome(Action.FAILED, f"extraction failed: {e}")
        for note in spec.dropped:
            self.logger.warning(f"Container '{name}': {note}")

        snapshot = ContainerSnapshot(container_id, spec.name, reference,
                                     change.before, change.after, spec)

        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would recreate container '{name}': {spec.describe()}")
            return outcome(Action.UPDATED, "dry run")

        self.logger.info(f"Recreating container '{name}' with the updated image...")
        try:
            self._recreate(snapshot)
        except requests.RequestException as e:
            self.logger.error(f"Failed to recreate container '{name}': {e}")
            return outcome(Action.FAILED, f"recreate failed: {e}")

        self.logger.info(f"Container '{name}' has been updated and restarted.")
        return outcome(Action.UPDATED)

    # -- sweep ------------------------------------------------------------

    def sweep(self) -> int:
        """Prune unused containers, networks, images (not only dangling) and volumes.

        Returns the number of bytes reclaimed. Raises SweepError on any failure.
        """
        if self.dry_run:
            self.logger.info("[DRY RUN] Would prune unused containers, networks, images and volumes")
            return 0
        try:
            reclaimed = self._docker.prune_containers()
            self._docker.prune_networks()
            reclaimed += self._docker.prune_images()
            reclaimed += self._docker.prune_volumes()
            reclaimed += self._docker.prune_build_cache()
        except requests.RequestException as e:
            raise SweepError(f"Failed to perform Docker system prune: {e}") from e
        return reclaimed

    # -- coordinator ------------------------------------------------------

    def _log_summary(self, report: RunReport) -> None:
        self.logger.info(BANNER)
        self.logger.info("=== Update Summary ===")
        for scope in Scope:
            counts = report.counts(scope)
            self.logger.info(
                f"{scope.value}: " + ', '.join(f"{a.value}={n}" for a, n in counts.items())
            )
            for o in report.by_scope(scope):
                if o.action in (Action.FAILED, Action.SKIPPED):
                    self.logger.warning(f"{scope.value} '{o.identifier}': {o.action.value} ({o.detail})")
        self.logger.info(BANNER)

    def run(self, base_path: Path) -> RunReport:
        """Update every compose project and standalone container, then sweep."""
        report = RunReport()

        self.logger.info(BANNER)
        self.logger.info("Docker Compose and Standalone Containers Update Started")
        self.logger.info(BANNER)
        self.logger.info(f"Base Path: {base_path}")
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        projects = discover_projects(base_path)
        if not projects:
            self.logger.info(f"No compose files found in '{base_path}'.")
        else:
            self.logger.info("Processing Docker Compose projects...")
            if self._compose is None:
                self.logger.error("Neither 'docker compose' nor 'docker-compose' is available.")
            for project in projects:
                report.add(self.update_project(project))

        self.logger.info(RULE)
        self.logger.info("Processing Standalone Docker Containers")
        self.logger.info(RULE)

        container_ids = self.standalone_container_ids()
        if not container_ids:
            self.logger.info("No standalone containers exist to check for updates.")
        else:
            for container_id in container_ids:
                report.add(self.update_standalone(container_id))
            if report.counts(Scope.STANDALONE)[Action.UPDATED]:
                self.logger.info("Standalone containers have been updated.")
            else:
                self.logger.info("All standalone containers are up-to-date.")

        self.logger.info(BANNER)
        self.logger.info("Cleaning up unused Docker resources...")
        try:
            report.space_reclaimed = self.sweep()
            self.logger.info(f"Docker cleanup completed ({report.space_reclaimed} bytes reclaimed).")
        finally:
            self._log_summary(report)
        return report


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _setup_logging(level: str) -> None:
    """Progress narration goes to stdout, warnings and errors to stderr."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    out_handler = logging.StreamHandler(sys.stdout)
    out_handler.addFilter(_BelowLevel(logging.WARNING))
    err_handler = logging.StreamHandler(sys.stderr)
    err_handler.setLevel(logging.WARNING)
    for handler in (out_handler, err_handler):
        handler.setFormatter(formatter)
        root.addHandler(handler)


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description='Update Docker Compose projects and standalone containers to their latest images'
    )
    parser.add_argument(
        'base_path',
        help='Directory whose immediate subdirectories hold compose projects'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Pull and compare images without recreating or pruning anything'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level (default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)

    base_path = Path(args.base_path)
    if not base_path.is_dir():
        print(f"The base path '{base_path}' does not exist or is not a directory.", file=sys.stderr)
        sys.exit(1)

    _setup_logging(args.log_level)

    try:
        docker = DockerClient()
        docker.ping()
        compose_command = detect_compose_command()
        compose = ComposeDriver(compose_command) if compose_command else None
        ContainerUpdater(docker, compose, args.dry_run).run(base_path)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    logging.getLogger('ContainerUpdater').info("Script execution completed.")


if __name__ == '__main__':
    main()

"""
Compose project discovery and a thin driver around the compose CLI.

Projects are the immediate subdirectories of a base path that hold a
compose file. Every compose call is issued as an argument vector with
the project directory as working directory; nothing goes through a
shell.
"""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

COMPOSE_FILE_NAMES = (
    'docker-compose.yml',
    'docker-compose.yaml',
    'compose.yml',
    'compose.yaml',
)


class ComposeError(Exception):
    """A compose subcommand failed or the compose binary is missing."""


@dataclass(frozen=True)
class ProjectDescriptor:
    name: str
    compose_file: Path
    working_dir: Path
    services: Tuple[str, ...] = ()


def normalize_project_name(name: str) -> str:
    """Apply the compose project name rules: lower-case, only [a-z0-9_-], no leading _ or -."""
    return re.sub(r'[^a-z0-9_-]', '', name.lower()).lstrip('_-')


def find_compose_file(directory: Path) -> Optional[Path]:
    for file_name in COMPOSE_FILE_NAMES:
        candidate = directory / file_name
        if candidate.is_file():
            return candidate
    return None


def discover_projects(base_path: Path) -> List[ProjectDescriptor]:
    """Return one descriptor per immediate subdirectory holding a compose file.

    Deeper nesting is never searched. Results are sorted by directory name.
    """
    projects = []
    for directory in sorted(p for p in base_path.iterdir() if p.is_dir()):
        compose_file = find_compose_file(directory)
        if compose_file is None:
            continue
        name = normalize_project_name(directory.name)
        if not name:
            logger.warning(f"Could not determine project name for '{compose_file}'. Skipping.")
            continue
        projects.append(ProjectDescriptor(name, compose_file, directory))
    return projects


def detect_compose_command() -> Optional[List[str]]:
    """Prefer the ``docker compose`` plugin, fall back to ``docker-compose``."""
    if shutil.which('docker'):
        try:
            result = subprocess.run(
                ['docker', 'compose', 'version'],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
            )
            if result.returncode == 0:
                return ['docker', 'compose']
        except OSError as e:
            logger.debug(f"'docker compose version' failed: {e}")
    if shutil.which('docker-compose'):
        return ['docker-compose']
    return None


class ComposeDriver:
    """Runs compose subcommands for one project at a time."""

    def __init__(self, command: Sequence[str]):
        self.command = list(command)

    def _run(self, project: ProjectDescriptor, args: Sequence[str],
             capture: bool = False) -> str:
        cmd = self.command + ['-f', str(project.compose_file)] + list(args)
        logger.debug(f"Running {' '.join(cmd)} in {project.working_dir}")
        try:
            result = subprocess.run(
                cmd,
                cwd=project.working_dir,
                stdin=subprocess.DEVNULL,
                capture_output=capture,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or '').strip() if capture else ''
            message = f"'{' '.join(args)}' exited with status {e.returncode}"
            raise ComposeError(f"{message}: {detail}" if detail else message) from e
        except OSError as e:
            raise ComposeError(f"Could not run {self.command[0]}: {e}") from e
        return result.stdout or ''

    def services(self, project: ProjectDescriptor) -> Tuple[str, ...]:
        output = self._run(project, ['config', '--services'], capture=True)
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def pull(self, project: ProjectDescriptor) -> None:
        self._run(project, ['pull'])

    def down(self, project: ProjectDescriptor) -> None:
        self._run(project, ['down'])

    def up(self, project: ProjectDescriptor) -> None:
        self._run(project, ['up', '--detach'])

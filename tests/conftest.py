"""Shared fakes for the runtime client and the compose driver."""

import itertools
from typing import Any, Dict, List, Optional

import pytest
import requests

from compose_driver import ComposeError
from docker_api import COMPOSE_PROJECT_LABEL, ImageResolutionError, PullError


def make_container_info(**overrides) -> Dict[str, Any]:
    """Build a minimal docker inspect result with sensible defaults."""
    info = {
        'Id': 'abcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890',
        'Name': '/test',
        'Image': 'sha256:old',
        'Config': {
            'Image': 'image:latest',
            'Env': ['PATH=/usr/bin:/bin'],
            'Cmd': None,
            'Labels': {},
        },
        'HostConfig': {
            'RestartPolicy': {'Name': '', 'MaximumRetryCount': 0},
            'NetworkMode': 'default',
            'PortBindings': None,
            'ExtraHosts': None,
        },
        'Mounts': [],
    }
    # Apply overrides by merging into nested dicts
    for key, value in overrides.items():
        if key in info and isinstance(info[key], dict) and isinstance(value, dict):
            info[key].update(value)
        else:
            info[key] = value
    return info


def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


class FakeDocker:
    """In-memory stand-in for docker_api.DockerClient.

    ``images`` maps references to the image ID the local store holds;
    ``registry`` maps references to the ID a pull would fetch.
    """

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, str] = {}
        self.registry: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def add_container(self, container_id: str, name: str, image: str, image_id: str,
                      labels: Optional[Dict[str, str]] = None, **overrides) -> Dict[str, Any]:
        info = make_container_info(
            Id=container_id, Name=f'/{name}', Image=image_id,
            Config={'Image': image, 'Env': [], 'Cmd': None, 'Labels': labels or {}},
            **overrides,
        )
        self.containers[container_id] = info
        self.images.setdefault(image, image_id)
        return info

    def _check(self, op: str, *args):
        self.calls.append((op,) + args)
        if op in self.fail:
            raise self.fail[op]

    def ping(self):
        self._check('ping')

    def list_container_ids(self, labels=()):
        self._check('list', tuple(labels))
        result = []
        for cid, info in self.containers.items():
            container_labels = info['Config'].get('Labels') or {}
            matches = True
            for label in labels:
                key, _, value = label.partition('=')
                if key not in container_labels or (value and container_labels[key] != value):
                    matches = False
            if matches:
                result.append(cid)
        return result

    def inspect_container(self, container_id):
        self._check('inspect', container_id)
        if container_id not in self.containers:
            raise _http_error(404)
        return self.containers[container_id]

    def pull_image(self, reference):
        self._check('pull', reference)
        if reference not in self.registry:
            raise PullError(f"Error pulling {reference}: manifest unknown")
        self.images[reference] = self.registry[reference]

    def image_id(self, reference):
        self._check('image_id', reference)
        if reference not in self.images:
            raise ImageResolutionError(reference)
        return self.images[reference]

    def stop_container(self, container_id):
        self._check('stop', container_id)

    def remove_container(self, container_id):
        self._check('remove', container_id)
        del self.containers[container_id]

    def create_container(self, name, body):
        self._check('create', name, body)
        new_id = f'new{next(self._ids):061d}'
        host_config = body.get('HostConfig', {})
        self.containers[new_id] = make_container_info(
            Id=new_id, Name=f'/{name}', Image=self.images[body['Image']],
            Config={'Image': body['Image'], 'Env': body.get('Env', []),
                    'Cmd': body.get('Cmd'), 'Labels': {}},
            HostConfig={
                'RestartPolicy': host_config.get('RestartPolicy', {'Name': '', 'MaximumRetryCount': 0}),
                'NetworkMode': host_config.get('NetworkMode', 'default'),
                'PortBindings': host_config.get('PortBindings'),
                'ExtraHosts': host_config.get('ExtraHosts'),
            },
        )
        return new_id

    def start_container(self, container_id):
        self._check('start', container_id)

    def prune_containers(self):
        self._check('prune_containers')
        return 10

    def prune_networks(self):
        self._check('prune_networks')

    def prune_images(self):
        self._check('prune_images')
        return 100

    def prune_volumes(self):
        self._check('prune_volumes')
        return 1000

    def prune_build_cache(self):
        self._check('prune_build_cache')
        return 0

    def ops(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeCompose:
    """Stand-in for compose_driver.ComposeDriver backed by a FakeDocker.

    ``up`` starts one container per service labeled like compose would.
    """

    def __init__(self, docker: FakeDocker):
        self.docker = docker
        self.services_by_project: Dict[str, tuple] = {}
        self.images_by_service: Dict[tuple, str] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}

    def define(self, project: str, services: Dict[str, str]):
        self.services_by_project[project] = tuple(services)
        for service, image in services.items():
            self.images_by_service[(project, service)] = image

    def start(self, project: str, service: str):
        image = self.images_by_service[(project, service)]
        cid = f'{project}-{service}'.ljust(64, '0')
        self.docker.add_container(cid, f'{project}-{service}-1', image, self.docker.images[image], labels={
            COMPOSE_PROJECT_LABEL: project,
            'com.docker.compose.service': service,
        })

    def _check(self, op, project):
        self.calls.append((op, project.name))
        if op in self.fail:
            raise self.fail[op]

    def services(self, project):
        self._check('services', project)
        return self.services_by_project.get(project.name, ())

    def pull(self, project):
        self._check('pull', project)
        for service in self.services_by_project[project.name]:
            image = self.images_by_service[(project.name, service)]
            if image in self.docker.registry:
                self.docker.images[image] = self.docker.registry[image]

    def down(self, project):
        self._check('down', project)
        for cid, info in list(self.docker.containers.items()):
            if (info['Config'].get('Labels') or {}).get(COMPOSE_PROJECT_LABEL) == project.name:
                del self.docker.containers[cid]

    def up(self, project):
        self._check('up', project)
        for service in self.services_by_project[project.name]:
            self.start(project.name, service)

    def ops(self) -> List[tuple]:
        return list(self.calls)


@pytest.fixture
def docker():
    return FakeDocker()


@pytest.fixture
def compose(docker):
    return FakeCompose(docker)


@pytest.fixture
def compose_error():
    return ComposeError("exited with status 1")

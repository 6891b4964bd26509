"""
Docker Engine API client over the local Unix socket.

Covers only the calls the updater needs: container listing and
inspection, image pull and lookup, stop/remove/create/start, and the
prune endpoints used by the final sweep.
"""

import json
import logging
import os
import socket as _socket
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
PING_TIMEOUT = 30
# Daemon calls carry no client-side timeout; the runtime enforces its own limits
API_TIMEOUT = None

COMPOSE_PROJECT_LABEL = 'com.docker.compose.project'
COMPOSE_SERVICE_LABEL = 'com.docker.compose.service'


class PullError(Exception):
    """The daemon reported an error inside the pull event stream."""


class ImageResolutionError(Exception):
    """A local image identity could not be resolved for a reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No local image found for '{reference}'")


class RuntimeUnavailableError(Exception):
    """The Docker daemon did not answer on its socket."""


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


def _label_filters(labels: Iterable[str]) -> str:
    return json.dumps({'label': list(labels)})


class DockerClient:
    """Docker Engine API client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self.socket_path = socket_path
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', API_TIMEOUT)
        r = self._session.get(self._url(path), **kwargs)
        r.raise_for_status()
        return r

    def post(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', API_TIMEOUT)
        r = self._session.post(self._url(path), **kwargs)
        r.raise_for_status()
        return r

    def delete(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', API_TIMEOUT)
        r = self._session.delete(self._url(path), **kwargs)
        r.raise_for_status()
        return r

    def ping(self) -> None:
        """Raise RuntimeUnavailableError unless the daemon answers /_ping."""
        try:
            self.get('/_ping', timeout=PING_TIMEOUT)
        except requests.RequestException as e:
            raise RuntimeUnavailableError(
                f"Docker daemon not reachable at {self.socket_path}: {e}"
            ) from e

    # -- containers --------------------------------------------------------

    def list_container_ids(self, labels: Iterable[str] = ()) -> List[str]:
        """Return IDs of running containers, optionally filtered by label.

        Each entry of ``labels`` is either ``key`` (label present) or
        ``key=value``; all of them must match.
        """
        params = {}
        labels = list(labels)
        if labels:
            params['filters'] = _label_filters(labels)
        containers = self.get('/containers/json', params=params).json()
        return [c['Id'] for c in containers]

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self.get(f'/containers/{container_id}/json').json()

    def stop_container(self, container_id: str) -> None:
        # No "t" parameter: the daemon applies the container's own StopTimeout
        self.post(f'/containers/{container_id}/stop')

    def remove_container(self, container_id: str) -> None:
        self.delete(f'/containers/{container_id}')

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        response = self.post('/containers/create', params={'name': name}, json=body)
        return response.json()['Id']

    def start_container(self, container_id: str) -> None:
        self.post(f'/containers/{container_id}/start')

    # -- images ------------------------------------------------------------

    def pull_image(self, reference: str) -> None:
        """Pull ``reference`` and wait for the event stream to finish.

        Raises PullError when the stream reports an error and
        requests.RequestException on transport failures.
        """
        image, tag = split_reference(reference)
        params = {'fromImage': image}
        if tag:
            params['tag'] = tag
        response = self.post('/images/create', params=params, stream=True)
        try:
            # Consume the stream; detect errors reported in the JSON event stream
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise PullError(f"Error pulling {reference}: {event['error']}")
        finally:
            response.close()

    def image_id(self, reference: str) -> str:
        """Return the content identity (sha256 ID) the local store binds to ``reference``."""
        try:
            return self.get(f'/images/{reference}/json').json()['Id']
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise ImageResolutionError(reference) from e
            raise

    # -- sweep -------------------------------------------------------------

    def prune_containers(self) -> int:
        return self.post('/containers/prune').json().get('SpaceReclaimed') or 0

    def prune_networks(self) -> None:
        self.post('/networks/prune')

    def prune_images(self) -> int:
        # dangling=false widens the prune to every unused image, not only untagged ones
        response = self.post(
            '/images/prune', params={'filters': json.dumps({'dangling': ['false']})}
        )
        return response.json().get('SpaceReclaimed') or 0

    def prune_volumes(self) -> int:
        try:
            response = self.post(
                '/volumes/prune', params={'filters': json.dumps({'all': ['true']})}
            )
        except requests.HTTPError as e:
            # API < 1.42 has no "all" filter and only prunes anonymous volumes anyway
            if e.response is None or e.response.status_code != 400:
                raise
            logger.debug("Daemon rejected volume prune filter 'all', retrying without it")
            response = self.post('/volumes/prune')
        return response.json().get('SpaceReclaimed') or 0

    def prune_build_cache(self) -> int:
        response = self.post('/build/prune', params={'all': 'true'})
        return response.json().get('SpaceReclaimed') or 0


def split_reference(reference: str) -> Tuple[str, str]:
    """Split an image reference into (name, tag).

    Digest references keep the digest in the name and return an empty
    tag. The colon of a registry port is not mistaken for a tag.
    """
    if '@' in reference:
        return reference, ''
    last_slash = reference.rfind('/')
    last_colon = reference.rfind(':')
    if last_colon > last_slash:
        return reference[:last_colon], reference[last_colon + 1:]
    return reference, 'latest'


def container_name(info: Dict[str, Any]) -> str:
    """Inspect records report names with a leading slash, e.g. "/mycontainer"."""
    return (info.get('Name') or '').lstrip('/')


def image_reference(info: Dict[str, Any]) -> Optional[str]:
    return (info.get('Config') or {}).get('Image') or None

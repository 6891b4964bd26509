"""
Best-effort reconstruction of a standalone container's run configuration.

A container's inspect record is the only description of how it was
launched. ``extract_run_spec`` turns that record into a ``RunSpec`` that
can be replayed against a refreshed image. The translation is one-way
and lossy: anything the runtime does not expose through standard
introspection (health-check overrides, devices, capabilities, labels,
entrypoint overrides) is not carried over.
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

logger = logging.getLogger(__name__)

# Network modes where the container shares another namespace and the
# runtime refuses published ports.
SHARED_NAMESPACE_MODES = ('host',)
SHARED_NAMESPACE_PREFIX = 'container:'

# Which RunSpec fields restore the original exactly and which are a
# best-effort approximation; callers use this to flag drift.
FIELD_COVERAGE = {
    'name': 'exact',
    'image': 'exact',
    'command': 'best-effort',
    'env': 'exact',
    'ports': 'best-effort',
    'volumes': 'best-effort',
    'network_mode': 'exact',
    'restart_policy': 'exact',
    'extra_hosts': 'exact',
}

# Shape of the inspect record parts the extractor reads.
INSPECT_SCHEMA = {
    "type": "object",
    "properties": {
        "Id": {"type": "string"},
        "Name": {"type": "string"},
        "Config": {
            "type": "object",
            "properties": {
                "Image": {"type": "string", "minLength": 1},
                "Cmd": {"type": ["array", "null"], "items": {"type": "string"}},
                "Env": {"type": ["array", "null"], "items": {"type": "string"}},
            },
            "required": ["Image"]
        },
        "HostConfig": {
            "type": "object",
            "properties": {
                "NetworkMode": {"type": "string"},
                "PortBindings": {"type": ["object", "null"]},
                "RestartPolicy": {"type": ["object", "null"]},
                "ExtraHosts": {"type": ["array", "null"], "items": {"type": "string"}},
            }
        },
        "Mounts": {"type": ["array", "null"], "items": {"type": "object"}}
    },
    "required": ["Id", "Name", "Config", "HostConfig"]
}


class ExtractionError(Exception):
    """The container could not be introspected into a RunSpec."""


@dataclass(frozen=True)
class KeyValue:
    key: str
    value: Optional[str]  # None for bare "KEY" entries that inherit from the daemon

    @classmethod
    def parse(cls, entry: str) -> 'KeyValue':
        if '=' not in entry:
            return cls(entry, None)
        key, value = entry.split('=', 1)
        return cls(key, value)

    def __str__(self) -> str:
        return self.key if self.value is None else f"{self.key}={self.value}"


@dataclass(frozen=True)
class PortMapping:
    host_port: str
    container_port: str
    protocol: str = 'tcp'
    host_ip: str = ''

    @property
    def port_key(self) -> str:
        return f"{self.container_port}/{self.protocol}"

    def __str__(self) -> str:
        target = self.container_port if self.protocol == 'tcp' else self.port_key
        if self.host_ip:
            return f"{self.host_ip}:{self.host_port}:{target}"
        return f"{self.host_port}:{target}"


@dataclass(frozen=True)
class VolumeMapping:
    source: str
    destination: str
    read_only: bool = False

    def __str__(self) -> str:
        suffix = ':ro' if self.read_only else ''
        return f"{self.source}:{self.destination}{suffix}"


@dataclass(frozen=True)
class RunSpec:
    """Declarative description of how to relaunch a standalone container."""
    name: str
    image: str
    command: Tuple[str, ...] = ()
    env: Tuple[KeyValue, ...] = ()
    ports: Tuple[PortMapping, ...] = ()
    volumes: Tuple[VolumeMapping, ...] = ()
    network_mode: Optional[str] = None
    restart_policy: Optional[str] = None
    extra_hosts: Tuple[str, ...] = ()
    # Notes for every item of the original config that could not be carried
    dropped: Tuple[str, ...] = field(default=(), compare=False)

    def to_create_body(self) -> Dict[str, Any]:
        """Build the Engine API container-create request body."""
        body: Dict[str, Any] = {'Image': self.image}
        if self.command:
            body['Cmd'] = list(self.command)
        if self.env:
            body['Env'] = [str(kv) for kv in self.env]

        hc: Dict[str, Any] = {}
        if self.ports:
            bindings: Dict[str, List[Dict[str, str]]] = {}
            exposed: Dict[str, Dict] = {}
            for port in self.ports:
                bindings.setdefault(port.port_key, []).append(
                    {'HostIp': port.host_ip, 'HostPort': port.host_port}
                )
                exposed[port.port_key] = {}
            hc['PortBindings'] = bindings
            body['ExposedPorts'] = exposed
        if self.volumes:
            hc['Binds'] = [str(v) for v in self.volumes]
        if self.network_mode:
            hc['NetworkMode'] = self.network_mode
        if self.restart_policy:
            name, _, retries = self.restart_policy.partition(':')
            hc['RestartPolicy'] = {
                'Name': name,
                'MaximumRetryCount': int(retries) if retries else 0,
            }
        if self.extra_hosts:
            hc['ExtraHosts'] = list(self.extra_hosts)
        body['HostConfig'] = hc
        return body

    def to_run_args(self) -> List[str]:
        """Render the equivalent ``docker run`` argument vector."""
        cmd = ['docker', 'run', '-d', '--name', self.name]
        if self.restart_policy:
            cmd.extend(['--restart', self.restart_policy])
        if self.network_mode:
            cmd.extend(['--network', self.network_mode])
        for port in self.ports:
            cmd.extend(['-p', str(port)])
        for volume in self.volumes:
            cmd.extend(['-v', str(volume)])
        for kv in self.env:
            cmd.extend(['-e', str(kv)])
        for host in self.extra_hosts:
            cmd.extend(['--add-host', host])
        cmd.append(self.image)
        cmd.extend(self.command)
        return cmd

    def describe(self) -> str:
        """Shell-quoted rendering of to_run_args(), for display only."""
        return shlex.join(self.to_run_args())


def _shares_network_namespace(network_mode: str) -> bool:
    return network_mode in SHARED_NAMESPACE_MODES or network_mode.startswith(SHARED_NAMESPACE_PREFIX)


def _extract_ports(host_config: Dict[str, Any], dropped: List[str]) -> Tuple[PortMapping, ...]:
    ports = []
    network_mode = host_config.get('NetworkMode') or ''
    for port_key, bindings in (host_config.get('PortBindings') or {}).items():
        container_port, _, protocol = port_key.partition('/')
        for binding in bindings or []:
            host_port = binding.get('HostPort') or ''
            if not host_port:
                # Host picked an ephemeral port; there is nothing deterministic to replay
                dropped.append(f"port {port_key}: ephemeral host port not reproducible")
                continue
            if _shares_network_namespace(network_mode):
                dropped.append(f"port {host_port}:{port_key}: not allowed with network mode {network_mode}")
                continue
            host_ip = binding.get('HostIp') or ''
            if host_ip in ('0.0.0.0', '::'):
                host_ip = ''
            ports.append(PortMapping(host_port, container_port, protocol or 'tcp', host_ip))
    return tuple(ports)


def _extract_volumes(mounts: List[Dict[str, Any]], dropped: List[str]) -> Tuple[VolumeMapping, ...]:
    volumes = []
    for mount in mounts:
        mount_type = mount.get('Type', 'bind')
        destination = mount.get('Destination', '')
        if mount_type == 'bind':
            source = mount.get('Source')
        elif mount_type == 'volume':
            source = mount.get('Name') or mount.get('Source')
        else:
            dropped.append(f"mount {destination}: type '{mount_type}' not supported")
            continue
        if not source or not destination:
            raise ExtractionError(f"Mount {mount!r} has no source or destination")
        rw = mount.get('RW')
        if not isinstance(rw, bool):
            raise ExtractionError(f"Mount {destination} has no usable read-only flag: RW={rw!r}")
        volumes.append(VolumeMapping(source, destination, read_only=not rw))
    return tuple(volumes)


def extract_run_spec(container_info: Dict[str, Any]) -> RunSpec:
    """Derive a RunSpec from a container's inspect record.

    Raises ExtractionError if the record does not have the expected
    shape or holds a value that cannot be represented faithfully.
    """
    try:
        jsonschema.validate(container_info, INSPECT_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ExtractionError(f"Unexpected inspect record: {e.message}") from e

    config = container_info['Config']
    host_config = container_info['HostConfig']
    dropped: List[str] = []

    network_mode = host_config.get('NetworkMode') or ''
    if network_mode == 'default':
        network_mode = ''
    if not network_mode.startswith(SHARED_NAMESPACE_PREFIX):
        primary = network_mode or 'bridge'
        attached = (container_info.get('NetworkSettings') or {}).get('Networks') or {}
        for network in sorted(attached):
            if network != primary:
                dropped.append(f"network {network}: secondary network not reconnected")

    restart = host_config.get('RestartPolicy') or {}
    restart_policy = restart.get('Name') or None
    if restart_policy == 'on-failure' and restart.get('MaximumRetryCount'):
        restart_policy = f"on-failure:{restart['MaximumRetryCount']}"

    spec = RunSpec(
        name=container_info['Name'].lstrip('/'),
        image=config['Image'],
        command=tuple(config.get('Cmd') or ()),
        env=tuple(KeyValue.parse(e) for e in config.get('Env') or ()),
        ports=_extract_ports(host_config, dropped),
        volumes=_extract_volumes(container_info.get('Mounts') or [], dropped),
        network_mode=network_mode or None,
        restart_policy=restart_policy,
        extra_hosts=tuple(host_config.get('ExtraHosts') or ()),
        dropped=tuple(dropped),
    )
    if not spec.name:
        raise ExtractionError(f"Container {container_info['Id'][:12]} has no name")
    return spec

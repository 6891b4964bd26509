"""Tests for the per-project compose update state machine."""

from pathlib import Path

import pytest

from compose_driver import ProjectDescriptor
from dcu import Action, ContainerUpdater, Scope, ServiceStatus, evaluate_services


def _project(name='proj'):
    return ProjectDescriptor(name, Path(f'/srv/{name}/docker-compose.yml'), Path(f'/srv/{name}'))


@pytest.fixture
def updater(docker, compose):
    return ContainerUpdater(docker, compose)


class TestEvaluateServices:

    def test_stops_at_first_service_not_running(self):
        seen = []

        def status_of(service):
            seen.append(service)
            return ServiceStatus(service, is_running=(service != 'db'))

        evaluation = evaluate_services(['db', 'web', 'cache'], status_of)

        assert seen == ['db']
        assert evaluation.containers_not_running
        assert not evaluation.has_updates

    def test_stops_at_first_changed_image(self):
        statuses = {
            'db': ServiceStatus('db', 'c1', 'pg:16', 'sha256:a', 'sha256:a', True),
            'web': ServiceStatus('web', 'c2', 'app:1', 'sha256:b', 'sha256:c', True),
            'cache': ServiceStatus('cache'),
        }
        seen = []

        def status_of(service):
            seen.append(service)
            return statuses[service]

        evaluation = evaluate_services(['db', 'web', 'cache'], status_of)

        assert seen == ['db', 'web']
        assert evaluation.has_updates
        assert evaluation.needs_restart

    def test_all_current(self):
        evaluation = evaluate_services(
            ['db'], lambda s: ServiceStatus(s, 'c1', 'pg:16', 'sha256:a', 'sha256:a', True)
        )
        assert not evaluation.needs_restart
        assert evaluation.failures == ()

    def test_unresolved_service_does_not_stop_the_scan(self):
        statuses = {
            'db': ServiceStatus('db', 'c1', 'pg:16', is_running=True, error='boom'),
            'web': ServiceStatus('web'),
        }
        evaluation = evaluate_services(['db', 'web'], statuses.__getitem__)

        assert evaluation.containers_not_running
        assert [s.service_name for s in evaluation.failures] == ['db']


class TestUpdateProject:

    def test_up_to_date_project_is_left_alone(self, docker, compose, updater):
        compose.define('proj', {'web': 'app:latest'})
        docker.images['app:latest'] = 'sha256:aaa'
        docker.registry['app:latest'] = 'sha256:aaa'
        compose.start('proj', 'web')

        outcome = updater.update_project(_project())

        assert outcome.scope is Scope.PROJECT
        assert outcome.action is Action.UP_TO_DATE
        assert ('down', 'proj') not in compose.ops()
        assert ('up', 'proj') not in compose.ops()

    def test_changed_image_recreates_whole_project(self, docker, compose, updater):
        compose.define('proj', {'db': 'pg:16', 'web': 'app:latest'})
        docker.images.update({'pg:16': 'sha256:pg', 'app:latest': 'sha256:old'})
        docker.registry.update({'pg:16': 'sha256:pg', 'app:latest': 'sha256:new'})
        compose.start('proj', 'db')
        compose.start('proj', 'web')

        outcome = updater.update_project(_project())

        assert outcome.action is Action.UPDATED
        assert compose.ops()[-2:] == [('down', 'proj'), ('up', 'proj')]

    def test_not_running_service_recreates_project(self, docker, compose, updater):
        compose.define('proj', {'api': 'api:latest'})
        docker.images['api:latest'] = 'sha256:api'
        docker.registry['api:latest'] = 'sha256:api'

        outcome = updater.update_project(_project())

        assert outcome.action is Action.UPDATED
        assert outcome.detail == 'containers not running'

    def test_no_services_skipped(self, compose, updater):
        compose.define('proj', {})

        outcome = updater.update_project(_project())

        assert outcome.action is Action.SKIPPED
        assert ('pull', 'proj') not in compose.ops()

    def test_pull_failure_skipped(self, compose, compose_error, updater):
        compose.define('proj', {'web': 'app:latest'})
        compose.fail['pull'] = compose_error

        outcome = updater.update_project(_project())

        assert outcome.action is Action.SKIPPED
        assert 'pull failed' in outcome.detail

    def test_down_failure_fails_without_up(self, compose, compose_error, updater):
        compose.define('proj', {'api': 'api:latest'})
        compose.fail['down'] = compose_error

        outcome = updater.update_project(_project())

        assert outcome.action is Action.FAILED
        assert ('up', 'proj') not in compose.ops()

    def test_up_failure_fails(self, compose, compose_error, updater):
        compose.define('proj', {'api': 'api:latest'})
        compose.fail['up'] = compose_error

        outcome = updater.update_project(_project())

        assert outcome.action is Action.FAILED
        assert 'up failed' in outcome.detail

    def test_unresolvable_image_is_never_up_to_date(self, docker, compose, updater):
        compose.define('proj', {'web': 'app:latest'})
        docker.images['app:latest'] = 'sha256:aaa'
        compose.start('proj', 'web')
        del docker.images['app:latest']

        outcome = updater.update_project(_project())

        assert outcome.action is Action.FAILED
        assert 'web' in outcome.detail
        assert ('down', 'proj') not in compose.ops()

    def test_compose_unavailable_skips(self, docker):
        outcome = ContainerUpdater(docker, None).update_project(_project())

        assert outcome.action is Action.SKIPPED
        assert outcome.detail == 'compose unavailable'

    def test_dry_run_does_not_restart(self, docker, compose):
        compose.define('proj', {'api': 'api:latest'})

        outcome = ContainerUpdater(docker, compose, dry_run=True).update_project(_project())

        assert outcome.action is Action.UPDATED
        assert ('down', 'proj') not in compose.ops()

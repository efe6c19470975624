"""Shared fixtures: an in-memory provider and template helpers."""

import itertools
import threading
import time
from pathlib import Path

import pytest

from stratus_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from stratus_deploy.provisioners.base import ProviderAdapter, ProviderResult
from stratus_deploy.state.manager import FileStateStore
from stratus_deploy.template.catalog import register_kind
from stratus_deploy.template.parser import TemplateParser
from stratus_deploy.utils.errors import ProviderError

TEST_TYPE = 'Test::Node'
OTHER_TYPE = 'Test::Other'

register_kind(TEST_TYPE, ['Arn', 'Name'])
register_kind(OTHER_TYPE, ['Arn'])

FIXTURES = Path(__file__).parent / 'fixtures'


class FakeProvider(ProviderAdapter):
    """Provider that keeps resources in memory and assigns ids r-1, r-2, ..."""

    def __init__(self):
        self.calls = []
        self.resources = {}
        self.failures = {}
        self.delays = {}
        self.outputs_by_type = {}
        self.active = 0
        self.max_active = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail_on(self, name, times=None, error=None):
        """Fail calls for a logical id (or provider id on delete)."""
        self.failures[name] = [times, error or ProviderError(f"injected failure for {name}")]

    def delay(self, name, seconds):
        self.delays[name] = seconds

    def operations(self, kind=None):
        return [call for call in self.calls if kind is None or call[0] == kind]

    def create(self, resource_type, properties, logical_id):
        self._begin('create', logical_id, properties)
        try:
            with self._lock:
                provider_id = f"r-{next(self._ids)}"
                self.resources[provider_id] = {
                    'type': resource_type,
                    'logical_id': logical_id,
                    'properties': properties,
                }
            return ProviderResult(provider_id, self._outputs(provider_id, resource_type, logical_id))
        finally:
            self._end()

    def update(self, resource_type, provider_id, properties, previous, logical_id=None):
        self._begin('update', logical_id, properties)
        try:
            with self._lock:
                self.resources[provider_id]['properties'] = properties
            return ProviderResult(provider_id, self._outputs(provider_id, resource_type, logical_id))
        finally:
            self._end()

    def delete(self, resource_type, provider_id):
        name = provider_id
        if provider_id not in self.failures:
            name = self.resources.get(provider_id, {}).get('logical_id', provider_id)
        self._begin('delete', name, None)
        try:
            with self._lock:
                self.resources.pop(provider_id, None)
        finally:
            self._end()

    def describe(self, resource_type, provider_id):
        resource = self.resources.get(provider_id)
        if resource is None:
            return None
        return self._outputs(provider_id, resource_type, resource['logical_id'])

    def lookup(self, kind, key):
        if kind == 'availability_zones':
            return [f"{key}a", f"{key}b"]
        if kind == 'ssm_parameter':
            return 'ami-0123456789abcdef0'
        if kind == 'pseudo_parameter':
            values = {'AWS::Region': 'us-east-1', 'AWS::AccountId': '123456789012'}
            if key in values:
                return values[key]
        raise NotImplementedError(kind)

    def _outputs(self, provider_id, resource_type, logical_id):
        outputs = {'Arn': f"arn:test:{provider_id}", 'Name': logical_id}
        outputs.update(self.outputs_by_type.get(resource_type, {}))
        return outputs

    def _begin(self, operation, name, properties):
        with self._lock:
            self.calls.append((operation, name, properties))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            failure = self.failures.get(name)
            if failure is not None:
                times, error = failure
                if times is not None:
                    failure[0] -= 1
                    if failure[0] <= 0:
                        del self.failures[name]
        if name in self.delays:
            time.sleep(self.delays[name])
        if failure is not None:
            self._end()
            raise error

    def _end(self):
        with self._lock:
            self.active -= 1


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def state_store(tmp_path):
    return FileStateStore(str(tmp_path / 'state'))


@pytest.fixture
def parser():
    return TemplateParser()


@pytest.fixture
def make_orchestrator(provider, state_store):
    def _make(**kwargs):
        return DeploymentOrchestrator(provider, state_store, 'test-stack', **kwargs)
    return _make


@pytest.fixture
def wordpress_template():
    return FIXTURES / 'wordpress.yaml'

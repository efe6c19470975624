"""Tests for cli/main.py using click's CliRunner and an in-memory provider."""

import importlib
import json
import logging
from unittest.mock import MagicMock

import click
import pytest
from click.testing import CliRunner

from conftest import FIXTURES, TEST_TYPE, FakeProvider
from stratus_deploy.cli.main import cli, parse_parameters

# stratus_deploy.cli re-exports the main() function, which shadows the submodule.
cli_main = importlib.import_module('stratus_deploy.cli.main')

TEMPLATE = f"""
Parameters:
  Label:
    Type: String
Resources:
  A:
    Type: {TEST_TYPE}
    Properties:
      Label: !Ref Label
  B:
    Type: {TEST_TYPE}
    Properties:
      Parent: !Ref A
Outputs:
  ParentName:
    Value: !GetAtt A.Name
"""

CONFIG = """
project:
  name: demo
  region: us-east-1
  parameters:
    Label: hello
logging:
  level: warning
  directory: null
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """CLI runs reconfigure the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def provider(monkeypatch):
    fake = FakeProvider()
    monkeypatch.setattr(cli_main, 'create_provider', lambda *args, **kwargs: (fake, MagicMock()))
    return fake


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / 'stratus.yaml').write_text(CONFIG)
    (tmp_path / 'template.yaml').write_text(TEMPLATE)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _run(*args, input=None):
    return CliRunner().invoke(cli, list(args), obj={}, input=input)


class TestParseParameters:
    """Test KEY=VALUE parsing."""

    def test_pairs(self):
        """Should split on the first equals sign."""
        assert parse_parameters(('A=1', 'B=x=y', 'C=')) == {'A': '1', 'B': 'x=y', 'C': ''}

    def test_malformed(self):
        """Should reject values without a key."""
        with pytest.raises(click.BadParameter):
            parse_parameters(('novalue',))


class TestValidateCommand:
    """Test the validate command."""

    def test_valid_template(self):
        """Should list resources of a valid template."""
        result = _run('validate', str(FIXTURES / 'wordpress.yaml'))
        assert result.exit_code == 0, result.output
        assert 'Template is valid' in result.output
        assert '25 resources' in result.output

    def test_cyclic_template(self, tmp_path):
        """Should exit non-zero and name the cycle."""
        path = tmp_path / 'cycle.yaml'
        path.write_text(
            f"Resources:\n"
            f"  A:\n    Type: {TEST_TYPE}\n    Properties:\n      X: !Ref B\n"
            f"  B:\n    Type: {TEST_TYPE}\n    Properties:\n      X: !Ref A\n"
        )
        result = _run('validate', str(path))
        assert result.exit_code == 1
        assert 'A -> B -> A' in result.output

    def test_missing_config(self, tmp_path, monkeypatch):
        """Without a template argument the config file is required."""
        monkeypatch.chdir(tmp_path)
        result = _run('validate')
        assert result.exit_code == 1
        assert 'Configuration file not found' in result.output


class TestApplyCommand:
    """Test plan, apply, outputs, refresh and destroy end to end."""

    def test_plan(self, project, provider):
        """Should show the planned creates and their waves without calling the provider."""
        result = _run('plan')
        assert result.exit_code == 0, result.output
        assert '2 to create' in result.output
        assert 'Wave' in result.output
        assert provider.calls == []

    def test_apply_then_reapply(self, project, provider):
        """Should apply once and report nothing to do afterwards."""
        result = _run('apply', '--yes')
        assert result.exit_code == 0, result.output
        assert 'Succeeded' in result.output
        assert [call[1] for call in provider.calls] == ['A', 'B']
        assert (project / '.stratus' / 'state' / 'A.json').exists()

        again = _run('apply', '--yes')
        assert again.exit_code == 0, again.output
        assert '2 unchanged' in again.output
        assert len(provider.calls) == 2

    def test_parameter_override(self, project, provider):
        """Command-line parameters should override configured ones."""
        result = _run('apply', '--yes', '-p', 'Label=override')
        assert result.exit_code == 0, result.output
        assert provider.calls[0][2] == {'Label': 'override'}

    def test_confirmation_declined(self, project, provider):
        """Declining the prompt should change nothing."""
        result = _run('apply', input='n\n')
        assert 'Apply cancelled' in result.output
        assert provider.calls == []

    def test_failed_apply_exits_non_zero(self, project, provider):
        """A failed node should make the command fail."""
        provider.fail_on('A')
        result = _run('apply', '--yes')
        assert result.exit_code == 1
        assert 'Failed' in result.output

    def test_parallel_flags(self, project, provider):
        """Should accept the parallel and timeout options."""
        result = _run('apply', '--yes', '--parallel', '--max-workers', '2', '--timeout', '30')
        assert result.exit_code == 0, result.output

    def test_outputs_json(self, project, provider):
        """Should print outputs from state as JSON."""
        _run('apply', '--yes')
        result = _run('--log-level', 'error', 'outputs', '--format', 'json')
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {'ParentName': 'A'}

    def test_refresh(self, project, provider):
        """Should report records of resources that disappeared."""
        _run('apply', '--yes')
        provider.resources.pop('r-2')
        result = _run('refresh')
        assert result.exit_code == 0, result.output
        assert 'B no longer exists' in result.output
        assert '1 removed' in result.output

    def test_destroy(self, project, provider):
        """Should delete everything after confirmation."""
        _run('apply', '--yes')
        result = _run('destroy', input='y\n')
        assert result.exit_code == 0, result.output
        assert [call[1] for call in provider.operations('delete')] == ['B', 'A']
        assert not list((project / '.stratus' / 'state').glob('*.json'))

    def test_destroy_nothing(self, project, provider):
        """Should say so when state is empty."""
        result = _run('destroy', '--yes')
        assert result.exit_code == 0
        assert 'No resources to destroy' in result.output

    def test_unknown_environment(self, project, provider):
        """Should fail on an environment missing from the config."""
        result = _run('--env', 'prod', 'plan')
        assert result.exit_code == 1
        assert "Environment 'prod' not found" in result.output

"""Tests for config/parser.py and config/models.py."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from stratus_deploy.config import Config, ConfigValidationError, ExecutionConfig, StateConfig


def _make_config(data, path='stratus.yaml'):
    return Config.from_dict(data, path)


class TestConfigLoading:
    """Test loading and validation."""

    def test_load_file(self, tmp_path):
        """Should load a YAML file and fill in section defaults."""
        path = tmp_path / 'stratus.yaml'
        path.write_text(
            "project:\n"
            "  name: wordpress\n"
            "  region: eu-west-2\n"
            "  parameters:\n"
            "    KeyName: ops\n"
            "execution:\n"
            "  parallel: true\n"
        )
        config = Config(str(path)).load()

        assert config.project.name == 'wordpress'
        assert config.execution.workers == 4
        assert config.retry.max_retries == 5
        assert config.state.backend == 'file'
        assert config.template_path() == tmp_path / 'template.yaml'

    def test_missing_file(self, tmp_path):
        """Should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / 'nope.yaml')).load()

    def test_malformed_yaml(self, tmp_path):
        """Should report YAML syntax errors as validation errors."""
        path = tmp_path / 'stratus.yaml'
        path.write_text("project: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            Config(str(path)).load()

    def test_missing_project(self):
        """Should require the project section."""
        with pytest.raises(ConfigValidationError) as exc_info:
            _make_config({'execution': {}})
        assert any(error['loc'] == ['project'] for error in exc_info.value.errors)

    def test_unknown_section(self):
        """Should reject sections it does not know."""
        with pytest.raises(ConfigValidationError) as exc_info:
            _make_config({'project': {'name': 'demo'}, 'deployment': {}})
        assert "Unknown section 'deployment'" in str(exc_info.value)

    def test_error_locations(self):
        """Should report nested locations of invalid values."""
        with pytest.raises(ConfigValidationError) as exc_info:
            _make_config({
                'project': {'name': 'Demo_Project'},
                'execution': {'max_workers': 0},
            })
        locations = [error['loc'] for error in exc_info.value.errors]
        assert ['project', 'name'] in locations
        assert ['execution', 'max_workers'] in locations
        assert 'project -> name' in str(exc_info.value)

    def test_invalid_region(self):
        """Should reject malformed region names."""
        with pytest.raises(ConfigValidationError):
            _make_config({'project': {'name': 'demo', 'region': 'London'}})

    def test_nested_parameter_rejected(self):
        """Parameter values must be scalars or lists of scalars."""
        with pytest.raises(ConfigValidationError):
            _make_config({'project': {'name': 'demo', 'parameters': {'X': {'a': 1}}}})


class TestEnvironments:
    """Test environment overrides."""

    @pytest.fixture
    def config(self):
        return _make_config({
            'project': {
                'name': 'wordpress',
                'region': 'eu-west-2',
                'parameters': {'InstanceType': 't2.micro', 'KeyName': 'ops'},
            },
            'environments': {
                'prod': {
                    'region': 'eu-west-1',
                    'parameters': {'InstanceType': 't3.small'},
                },
                'dev': None,
            },
        })

    def test_stack_name(self, config):
        """Should suffix the stack name with the environment."""
        assert config.stack_name() == 'wordpress'
        assert config.stack_name('prod') == 'wordpress-prod'

    def test_parameters_merge(self, config):
        """Environment parameters should override project parameters."""
        assert config.get_parameters('prod') == {'InstanceType': 't3.small', 'KeyName': 'ops'}
        assert config.get_parameters() == {'InstanceType': 't2.micro', 'KeyName': 'ops'}

    def test_region_override(self, config):
        """Should fall back to the project region."""
        assert config.get_region('prod') == 'eu-west-1'
        assert config.get_region('dev') == 'eu-west-2'

    def test_state_is_isolated_per_environment(self, config):
        """Each environment should get its own state location."""
        assert config.get_state('prod').directory == str(Path('.stratus/state') / 'prod')
        assert config.get_state('prod').prefix == 'stratus/prod'
        assert config.get_state().directory == '.stratus/state'

    def test_unknown_environment(self, config):
        """Should list available environments."""
        with pytest.raises(ConfigValidationError) as exc_info:
            config.get_environment('staging')
        assert 'prod' in str(exc_info.value)

    def test_to_dict(self, config):
        """Should serialize every section."""
        data = config.to_dict()
        assert data['project']['name'] == 'wordpress'
        assert set(data['environments']) == {'prod', 'dev'}
        assert data['execution']['max_workers'] == 4


class TestModels:
    """Test section models directly."""

    def test_s3_backend_needs_bucket(self):
        """Should require a bucket for the s3 backend."""
        with pytest.raises(ValidationError):
            StateConfig(backend='s3')
        assert StateConfig(backend='s3', bucket='my-state').bucket == 'my-state'

    def test_sequential_uses_one_worker(self):
        """Workers should be 1 unless parallel is enabled."""
        assert ExecutionConfig(max_workers=8).workers == 1
        assert ExecutionConfig(parallel=True, max_workers=8).workers == 8

    def test_timeout_must_be_positive(self):
        """Should reject non-positive timeouts."""
        with pytest.raises(ValidationError):
            ExecutionConfig(timeout=0)

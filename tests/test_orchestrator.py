"""Tests for orchestrator/orchestrator.py - planning, outputs and refresh."""

import base64

import pytest

from conftest import TEST_TYPE
from stratus_deploy.orchestrator.executor import NodeState
from stratus_deploy.orchestrator.planner import ChangeType
from stratus_deploy.utils.errors import ValidationError

WITH_OUTPUTS = f"""
Parameters:
  Secret:
    Type: String
    NoEcho: true
  Label:
    Type: String
    Default: demo
Resources:
  A:
    Type: {TEST_TYPE}
    Properties:
      Label: !Ref Label
      Token: !Ref Secret
  B:
    Type: {TEST_TYPE}
    Properties:
      Parent: !GetAtt A.Arn
Outputs:
  Url:
    Value: !Sub "http://${{A.Name}}/${{Label}}"
  Leaky:
    Value: !Sub "token=${{Secret}}"
  ParentArn:
    Value: !GetAtt B.Arn
"""

WORDPRESS_PARAMETERS = {
    'KeyName': 'wordpress-key',
    'DBPassword': 'hunter2hunter2',
}


class TestPlan:
    """Test plan previews."""

    def test_plan_does_not_touch_provider_or_state(self, make_orchestrator, parser, provider, state_store):
        """Planning should only read."""
        plan = make_orchestrator().plan(parser.parse_text(WITH_OUTPUTS), {'Secret': 's3cr3t'})
        assert [step.change_type for step in plan.steps] == [ChangeType.CREATE, ChangeType.CREATE]
        assert provider.calls == []
        assert state_store.load() == {}

    def test_missing_parameter(self, make_orchestrator, parser):
        """Should reject a run without a required parameter value."""
        with pytest.raises(ValidationError):
            make_orchestrator().plan(parser.parse_text(WITH_OUTPUTS))

    def test_unknown_parameter(self, make_orchestrator, parser):
        """Should reject values for undeclared parameters."""
        with pytest.raises(ValidationError):
            make_orchestrator().plan(parser.parse_text(WITH_OUTPUTS), {'Secret': 'x', 'Bogus': 'y'})


class TestOutputs:
    """Test stack output evaluation."""

    def test_apply_evaluates_and_masks_outputs(self, make_orchestrator, parser):
        """Should evaluate outputs after apply and hide NoEcho values."""
        summary = make_orchestrator().apply(parser.parse_text(WITH_OUTPUTS), {'Secret': 's3cr3t'})

        assert summary.is_success()
        assert summary.outputs == {
            'Url': 'http://A/demo',
            'Leaky': 'token=****',
            'ParentArn': 'arn:test:r-2',
        }
        assert summary.output_errors == {}

    def test_outputs_from_state(self, make_orchestrator, parser):
        """Should evaluate outputs later from recorded state."""
        graph = parser.parse_text(WITH_OUTPUTS)
        orchestrator = make_orchestrator()
        orchestrator.apply(graph, {'Secret': 's3cr3t'})

        values, errors = orchestrator.outputs(graph, {'Secret': 's3cr3t'})
        assert values['Url'] == 'http://A/demo'
        assert values['Leaky'] == 'token=****'
        assert errors == {}

    def test_outputs_of_failed_nodes_are_reported(self, make_orchestrator, parser, provider):
        """Outputs depending on a failed node should be listed as errors."""
        provider.fail_on('B')
        summary = make_orchestrator().apply(parser.parse_text(WITH_OUTPUTS), {'Secret': 's3cr3t'})

        assert summary.results['B'].state == NodeState.FAILED
        assert 'ParentArn' in summary.output_errors
        assert summary.outputs['Url'] == 'http://A/demo'


class TestRefresh:
    """Test reconciling state with the provider."""

    def test_refresh_removes_missing_and_updates_changed(self, make_orchestrator, parser, provider, state_store):
        """Should drop records of vanished resources and merge changed outputs."""
        orchestrator = make_orchestrator()
        orchestrator.apply(parser.parse_text(
            f"Resources:\n"
            f"  A:\n    Type: {TEST_TYPE}\n"
            f"  B:\n    Type: {TEST_TYPE}\n"
            f"  C:\n    Type: {TEST_TYPE}\n"
        ))
        del provider.resources['r-2']
        provider.outputs_by_type[TEST_TYPE] = {'Status': 'ready'}

        result = orchestrator.refresh()

        assert result.removed == ['B']
        assert result.updated == ['A', 'C']
        assert result.unchanged == []
        records = state_store.load()
        assert set(records) == {'A', 'C'}
        assert records['A'].outputs['Status'] == 'ready'
        assert orchestrator.refresh().unchanged == ['A', 'C']

    def test_apply_after_refresh_recreates(self, make_orchestrator, parser, provider):
        """A resource removed out of band should be recreated by the next apply."""
        text = f"Resources:\n  A:\n    Type: {TEST_TYPE}\n"
        orchestrator = make_orchestrator()
        orchestrator.apply(parser.parse_text(text))
        provider.resources.clear()

        orchestrator.refresh()
        summary = orchestrator.apply(parser.parse_text(text))

        assert summary.results['A'].change_type == ChangeType.CREATE
        assert summary.results['A'].provider_id == 'r-2'


class TestWordPressStack:
    """Apply the WordPress reference template end to end."""

    @pytest.fixture
    def wordpress_provider(self, provider):
        provider.outputs_by_type.update({
            'AWS::RDS::DBInstance': {'Endpoint.Address': 'wordpress.abc123.rds.amazonaws.com'},
            'AWS::ElasticLoadBalancingV2::LoadBalancer': {'DNSName': 'wordpress-alb-1.elb.amazonaws.com'},
            'AWS::EC2::LaunchTemplate': {'LatestVersionNumber': '1'},
        })
        return provider

    def test_apply_and_reapply(self, make_orchestrator, wordpress_provider, wordpress_template, state_store):
        """Should create all 25 resources once and publish the site URL."""
        orchestrator = make_orchestrator(max_workers=4)
        graph = orchestrator.load_template(wordpress_template)

        summary = orchestrator.apply(graph, WORDPRESS_PARAMETERS)

        assert summary.is_success(), summary.failed
        assert len(summary.applied) == 25
        assert summary.outputs == {'WebsiteURL': 'http://wordpress-alb-1.elb.amazonaws.com/'}
        assert len(state_store.load()) == 25

        created = {call[1]: call[2] for call in wordpress_provider.operations('create')}
        assert created['PublicSubnetA']['AvailabilityZone'] == 'us-east-1a'
        assert created['PublicSubnetB']['AvailabilityZone'] == 'us-east-1b'
        launch_data = created['WordPressLaunchTemplate']['LaunchTemplateData']
        assert launch_data['ImageId'] == 'ami-0123456789abcdef0'
        user_data = base64.b64decode(launch_data['UserData']).decode()
        assert 'wordpress.abc123.rds.amazonaws.com:3306' in user_data
        assert created['AutoScalingGroup']['LaunchTemplate']['Version'] == '1'

        again = orchestrator.apply(graph, WORDPRESS_PARAMETERS)
        assert again.is_success()
        assert len(again.no_op) == 25
        assert len(wordpress_provider.operations('create')) == 25

    def test_destroy(self, make_orchestrator, wordpress_provider, wordpress_template, state_store):
        """Should delete everything, the VPC after everything inside it."""
        orchestrator = make_orchestrator(max_workers=4)
        orchestrator.apply(orchestrator.load_template(wordpress_template), WORDPRESS_PARAMETERS)

        summary = orchestrator.destroy()

        assert summary.is_success()
        deleted = [call[1] for call in wordpress_provider.operations('delete')]
        assert len(deleted) == 25
        assert deleted.index('AutoScalingGroup') < deleted.index('WordPressLaunchTemplate')
        assert deleted.index('PublicSubnetA') < deleted.index('VPC')
        assert state_store.load() == {}

"""Tests for orchestrator/planner.py - change decisions and plan ordering."""

import pytest

from conftest import OTHER_TYPE, TEST_TYPE, FakeProvider
from stratus_deploy.orchestrator.planner import ChangeType, Planner, decide_change
from stratus_deploy.state.models import ReplacedResource, StateRecord
from stratus_deploy.template.intrinsics import Reference
from stratus_deploy.template.models import ResourceNode
from stratus_deploy.template.resolver import content_hash
from stratus_deploy.utils.errors import CycleError

TWO_NODES = f"""
Resources:
  A:
    Type: {TEST_TYPE}
    Properties:
      Size: 1
  B:
    Type: {TEST_TYPE}
    Properties:
      Parent: !Ref A
"""


def _make_record(node_id, resource_type=TEST_TYPE, digest='old', **overrides):
    values = {
        'node_id': node_id,
        'type': resource_type,
        'provider_id': f"r-{node_id}",
        'content_hash': digest,
    }
    values.update(overrides)
    return StateRecord(**values)


def _make_plan(parser, text, records=None):
    graph = parser.parse_text(text)
    return Planner().create_plan(graph, records or {}, {}, 'demo', FakeProvider().lookup)


class TestDecideChange:
    """Test the per-node change decision."""

    def test_create_when_not_in_state(self):
        """Should create nodes without a record."""
        step = decide_change(ResourceNode('A', TEST_TYPE, {}), None, 'h1')
        assert step.change_type == ChangeType.CREATE

    def test_no_change_when_hash_matches(self):
        """Should be a no-op when type and hash match."""
        step = decide_change(ResourceNode('A', TEST_TYPE, {}), _make_record('A', digest='h1'), 'h1')
        assert step.change_type == ChangeType.NO_CHANGE

    def test_update_when_hash_differs(self):
        """Should update when the resolved properties changed."""
        step = decide_change(ResourceNode('A', TEST_TYPE, {}), _make_record('A', digest='h0'), 'h1')
        assert step.change_type == ChangeType.UPDATE
        assert step.reason == 'properties changed'

    def test_pending_replacement_is_reported(self):
        """Should report superseded resources still awaiting deletion on an unchanged node."""
        record = _make_record('A', digest='h1', replaced=[ReplacedResource(type=OTHER_TYPE, provider_id='r-0')])
        step = decide_change(ResourceNode('A', TEST_TYPE, {}), record, 'h1')
        assert step.change_type == ChangeType.NO_CHANGE
        assert step.reason == '1 replaced resource(s) pending deletion'

    def test_type_change_is_replacement(self):
        """Should create a new resource and remember the one it replaces."""
        step = decide_change(ResourceNode('A', OTHER_TYPE, {}), _make_record('A', digest='h1'), 'h1')
        assert step.change_type == ChangeType.CREATE
        assert step.replaces == 'r-A'

    def test_pending_outputs_mean_update(self):
        """Should plan an update when inputs are not known yet."""
        step = decide_change(
            ResourceNode('B', TEST_TYPE, {}),
            _make_record('B', digest='h1'),
            'h1',
            {Reference('A', 'id')}
        )
        assert step.change_type == ChangeType.UPDATE
        assert 'A' in step.reason


class TestPlanner:
    """Test whole-plan creation."""

    def test_first_run_creates_everything_in_order(self, parser):
        """Should create every node, dependencies first."""
        plan = _make_plan(parser, TWO_NODES)
        assert [(s.node_id, s.change_type) for s in plan.steps] == [
            ('A', ChangeType.CREATE), ('B', ChangeType.CREATE)
        ]
        assert plan.get_step('B').deferred == {Reference('A', 'id')}

    def test_unchanged_stack_is_all_no_change(self, parser):
        """Should plan no changes when records match the resolved template."""
        records = {
            'A': _make_record('A', digest=content_hash(TEST_TYPE, {'Size': 1})),
            'B': _make_record('B', digest=content_hash(TEST_TYPE, {'Parent': 'r-A'}), dependencies=['A']),
        }
        plan = _make_plan(parser, TWO_NODES, records)
        assert not plan.has_changes()
        assert plan.get_summary()['no_change'] == 2

    def test_changed_output_propagates_as_update(self, parser):
        """A dependency with a new provider id should change its dependents' hash."""
        records = {
            'A': _make_record('A', digest=content_hash(TEST_TYPE, {'Size': 1}), provider_id='r-new'),
            'B': _make_record('B', digest=content_hash(TEST_TYPE, {'Parent': 'r-old'})),
        }
        plan = _make_plan(parser, TWO_NODES, records)
        assert plan.get_step('A').change_type == ChangeType.NO_CHANGE
        assert plan.get_step('B').change_type == ChangeType.UPDATE

    def test_removed_nodes_deleted_dependents_first(self, parser):
        """Should delete nodes missing from the template in reverse order."""
        text = f"Resources:\n  Keep:\n    Type: {TEST_TYPE}\n"
        records = {
            'Keep': _make_record('Keep', digest=content_hash(TEST_TYPE, {}), position=0),
            'Old': _make_record('Old', position=1),
            'Older': _make_record('Older', position=2, dependencies=['Old']),
        }
        plan = _make_plan(parser, text, records)
        assert [(s.node_id, s.change_type) for s in plan.steps] == [
            ('Keep', ChangeType.NO_CHANGE),
            ('Older', ChangeType.DELETE),
            ('Old', ChangeType.DELETE),
        ]
        assert [s.node_id for s in plan.forward_steps()] == ['Keep']
        assert plan.delete_graph.get_dependents('Old') == {'Older'}
        assert plan.get_waves() == {'Keep': 1, 'Older': 2, 'Old': 3}

    def test_removed_node_blocked_by_surviving_reference(self, parser):
        """Should record surviving nodes whose stored dependencies name a removed node."""
        text = f"Resources:\n  Keep:\n    Type: {TEST_TYPE}\n"
        records = {
            'Keep': _make_record('Keep', position=0, dependencies=['Old']),
            'Old': _make_record('Old', position=1),
        }
        plan = _make_plan(parser, text, records)
        assert plan.get_step('Keep').change_type == ChangeType.UPDATE
        assert plan.delete_blockers == {'Old': {'Keep'}}

    def test_waves_follow_dependencies(self, parser):
        """Should number independent groups of steps in apply order."""
        plan = _make_plan(parser, TWO_NODES)
        assert plan.get_waves() == {'A': 1, 'B': 2}

    def test_cycle_fails_before_planning(self, parser):
        """Should raise CycleError for cyclic templates."""
        text = (
            f"Resources:\n"
            f"  A:\n    Type: {TEST_TYPE}\n    Properties:\n      X: !Ref B\n"
            f"  B:\n    Type: {TEST_TYPE}\n    Properties:\n      X: !Ref A\n"
        )
        with pytest.raises(CycleError):
            _make_plan(parser, text)

    def test_destruction_plan(self):
        """Should delete every record, dependents first."""
        records = {
            'A': _make_record('A', position=0),
            'B': _make_record('B', position=1, dependencies=['A']),
            'C': _make_record('C', position=2),
        }
        plan = Planner().create_destruction_plan(records)
        order = [step.node_id for step in plan.steps]
        assert order.index('B') < order.index('A')
        assert all(step.change_type == ChangeType.DELETE for step in plan.steps)

    def test_destruction_plan_empty(self):
        """Should produce an empty plan for an empty state."""
        plan = Planner().create_destruction_plan({})
        assert plan.steps == []
        assert not plan.has_changes()

"""Tests for template/intrinsics.py - YAML tags, placeholders and evaluation."""

import base64

import pytest

from conftest import TEST_TYPE
from stratus_deploy.template.intrinsics import (
    Base64,
    Deferred,
    GetAtt,
    GetAZs,
    IntrinsicBuilder,
    Join,
    ParameterRef,
    PseudoRef,
    Ref,
    Reference,
    Select,
    Sub,
    iter_references,
    load_yaml,
)
from stratus_deploy.template.resolver import OutputRegistry, Resolver
from stratus_deploy.utils.errors import ParseError, ReferenceError


def _make_builder(resources=None, parameters=()):
    resources = resources if resources is not None else {'A': TEST_TYPE, 'B': TEST_TYPE}
    return IntrinsicBuilder(resources, frozenset(parameters))


def _make_resolver(outputs=None, parameters=None, strict=True, lookup=None):
    def default_lookup(kind, key):
        if kind == 'availability_zones':
            return [f"{key}a", f"{key}b", f"{key}c"]
        if kind == 'pseudo_parameter' and key == 'AWS::Region':
            return 'eu-west-2'
        raise NotImplementedError(kind)

    return Resolver(
        parameters or {},
        'demo',
        OutputRegistry(outputs or {}),
        lookup or default_lookup,
        strict=strict
    )


class TestLoadYaml:
    """Test the intrinsic-aware YAML loader."""

    def test_short_form_ref(self):
        """Should turn !Ref into a Ref mapping."""
        assert load_yaml("a: !Ref VPC") == {'a': {'Ref': 'VPC'}}

    def test_short_form_getatt_string(self):
        """Should split a dotted !GetAtt on the first dot only."""
        doc = load_yaml("a: !GetAtt DB.Endpoint.Address")
        assert doc == {'a': {'Fn::GetAtt': ['DB', 'Endpoint.Address']}}

    def test_short_form_sequence_tag(self):
        """Should keep sequence arguments of other tags."""
        doc = load_yaml("a: !Select [0, !GetAZs '']")
        assert doc == {'a': {'Fn::Select': [0, {'Fn::GetAZs': ''}]}}

    def test_nested_short_form(self):
        """Should convert tags nested under long-form keys."""
        doc = load_yaml("a:\n  Fn::Base64: !Sub 'x-${A}'\n")
        assert doc == {'a': {'Fn::Base64': {'Fn::Sub': 'x-${A}'}}}

    def test_duplicate_key_rejected(self):
        """Should raise ParseError naming the duplicate key and both lines."""
        with pytest.raises(ParseError) as exc_info:
            load_yaml("a: 1\nb: 2\na: 3\n")
        assert "Duplicate key 'a'" in str(exc_info.value)
        assert 'line 3' in str(exc_info.value)
        assert 'line 1' in str(exc_info.value)

    def test_malformed_yaml(self):
        """Should wrap YAML errors in ParseError."""
        with pytest.raises(ParseError):
            load_yaml("a: [1, 2\n")

    def test_json_is_accepted(self):
        """Should parse JSON documents."""
        assert load_yaml('{"a": {"Ref": "B"}}') == {'a': {'Ref': 'B'}}


class TestIntrinsicBuilder:
    """Test conversion of long-form intrinsics to placeholders."""

    def test_ref_to_resource(self):
        """Should build Ref for a resource name."""
        assert _make_builder().build({'Ref': 'A'}, 'X') == Ref('A')

    def test_ref_to_parameter(self):
        """Should build ParameterRef for a parameter name."""
        builder = _make_builder(parameters=['Size'])
        assert builder.build({'Ref': 'Size'}, 'X') == ParameterRef('Size')

    def test_ref_to_pseudo_parameter(self):
        """Should build PseudoRef for AWS:: names."""
        assert _make_builder().build({'Ref': 'AWS::Region'}, 'X') == PseudoRef('AWS::Region')

    def test_ref_undefined(self):
        """Should raise ReferenceError naming the missing target."""
        with pytest.raises(ReferenceError) as exc_info:
            _make_builder().build({'Ref': 'Missing'}, 'X.Properties.Y')
        assert "'Missing'" in str(exc_info.value)
        assert 'X.Properties.Y' in str(exc_info.value)

    def test_reference_error_is_parse_error(self):
        """ReferenceError should be a ParseError."""
        with pytest.raises(ParseError):
            _make_builder().build({'Ref': 'Missing'}, 'X')

    def test_getatt_checks_published_attributes(self):
        """Should accept published attributes and reject others."""
        builder = _make_builder()
        assert builder.build({'Fn::GetAtt': ['A', 'Arn']}, 'X') == GetAtt('A', 'Arn')
        with pytest.raises(ReferenceError):
            builder.build({'Fn::GetAtt': ['A', 'Bogus']}, 'X')

    def test_getatt_undefined_target(self):
        """Should raise ReferenceError for an undefined target."""
        with pytest.raises(ReferenceError):
            _make_builder().build({'Fn::GetAtt': ['Nope', 'Arn']}, 'X')

    def test_unsupported_function(self):
        """Should reject functions outside the supported set."""
        with pytest.raises(ParseError) as exc_info:
            _make_builder().build({'Fn::FindInMap': ['a', 'b', 'c']}, 'X')
        assert 'Fn::FindInMap' in str(exc_info.value)

    def test_condition_rejected(self):
        """Should reject Condition references."""
        with pytest.raises(ParseError):
            _make_builder().build({'Condition': 'IsProd'}, 'X')

    def test_plain_mappings_are_recursed(self):
        """Should leave non-intrinsic mappings intact while converting nested values."""
        built = _make_builder().build({'Tags': [{'Key': 'k', 'Value': {'Ref': 'A'}}]}, 'X')
        assert built == {'Tags': [{'Key': 'k', 'Value': Ref('A')}]}

    def test_sub_splits_text_and_references(self):
        """Should split Sub text into literals and placeholders."""
        sub = _make_builder(parameters=['User']).build(
            {'Fn::Sub': 'http://${A.Arn}/${User}/${AWS::Region}'}, 'X'
        )
        assert sub == Sub(('http://', GetAtt('A', 'Arn'), '/', ParameterRef('User'), '/', PseudoRef('AWS::Region')))

    def test_sub_dotted_attribute(self):
        """Should split ${A.B.C} on the first dot."""
        builder = IntrinsicBuilder({'DB': 'AWS::RDS::DBInstance'}, frozenset())
        sub = builder.build({'Fn::Sub': '${DB.Endpoint.Address}:3306'}, 'X')
        assert sub.parts == (GetAtt('DB', 'Endpoint.Address'), ':3306')

    def test_sub_escaped_literal(self):
        """Should keep ${!Name} as the literal ${Name}."""
        sub = _make_builder().build({'Fn::Sub': 'cost ${!Price}'}, 'X')
        assert sub.parts == ('cost ', '${Price}')

    def test_sub_with_variables(self):
        """Should substitute variables from the mapping form."""
        sub = _make_builder().build({'Fn::Sub': ['${Name}-x', {'Name': {'Ref': 'A'}}]}, 'X')
        assert sub.parts == (Ref('A'), '-x')

    def test_sub_undefined_reference(self):
        """Should raise ReferenceError for unknown names in Sub text."""
        with pytest.raises(ReferenceError):
            _make_builder().build({'Fn::Sub': '${Nope}'}, 'X')

    def test_select_and_getazs(self):
        """Should build nested Select/GetAZs placeholders."""
        built = _make_builder().build({'Fn::Select': [1, {'Fn::GetAZs': ''}]}, 'X')
        assert built == Select(1, GetAZs(''))

    def test_join_requires_delimiter_and_list(self):
        """Should reject malformed Fn::Join arguments."""
        with pytest.raises(ParseError):
            _make_builder().build({'Fn::Join': 'abc'}, 'X')


class TestIterReferences:
    """Test reference discovery inside property bags."""

    def test_collects_nested_references(self):
        """Should find references inside lists, mappings and Sub parts."""
        value = {
            'a': [Ref('A'), {'b': GetAtt('B', 'Arn')}],
            'c': Base64(Sub(('x', Ref('B')))),
            'd': ParameterRef('P'),
        }
        assert set(iter_references(value)) == {
            Reference('A', 'id'), Reference('B', 'Arn'), Reference('B', 'id')
        }


class TestEvaluation:
    """Test placeholder evaluation against a resolver."""

    def test_ref_and_getatt(self):
        """Should read provider id and outputs from the registry."""
        resolver = _make_resolver({'A': {'id': 'r-1', 'Arn': 'arn:1'}})
        assert resolver.resolve(Ref('A')) == 'r-1'
        assert resolver.resolve(GetAtt('A', 'Arn')) == 'arn:1'

    def test_missing_output_strict(self):
        """Should raise ReferenceError in strict mode."""
        with pytest.raises(ReferenceError):
            _make_resolver().resolve(Ref('A'))

    def test_missing_output_deferred(self):
        """Should return a Deferred marker and record it in non-strict mode."""
        resolver = _make_resolver(strict=False)
        resolved, deferred = resolver.resolve_properties({'x': Ref('A')})
        assert isinstance(resolved['x'], Deferred)
        assert resolved['x'].reference == Reference('A', 'id')
        assert deferred == {Reference('A', 'id')}

    def test_sub_renders_text(self):
        """Should join literal and resolved parts."""
        resolver = _make_resolver({'A': {'id': 'r-1'}}, {'User': 'admin'})
        sub = Sub(('u=', ParameterRef('User'), ' id=', Ref('A'), ' flag=', True))
        assert resolver.resolve(sub) == 'u=admin id=r-1 flag=true'

    def test_select_from_availability_zones(self):
        """Should select from the provider's zone list of the current region."""
        resolver = _make_resolver()
        assert resolver.resolve(Select(1, GetAZs(''))) == 'eu-west-2b'

    def test_select_out_of_range(self):
        """Should raise ParseError when the index is out of range."""
        with pytest.raises(ParseError):
            _make_resolver().resolve(Select(5, ['a', 'b']))

    def test_select_non_integer_index(self):
        """Should raise ParseError when the index is not an integer."""
        resolver = _make_resolver(parameters={'Index': 'first'})
        with pytest.raises(ParseError, match='must be an integer'):
            resolver.resolve(Select(ParameterRef('Index'), ['a', 'b']))
        with pytest.raises(ParseError):
            resolver.resolve(Select(['0'], ['a', 'b']))

    def test_select_deferred_index(self):
        """Should defer when the index is an output not known yet."""
        resolver = _make_resolver(strict=False)
        assert isinstance(resolver.resolve(Select(GetAtt('A', 'Index'), ['a', 'b'])), Deferred)

    def test_select_passes_deferred_through(self):
        """Should not fail on a list that is not known yet."""
        resolver = _make_resolver(strict=False)
        assert isinstance(resolver.resolve(Select(0, GetAtt('A', 'Arn'))), Deferred)

    def test_join(self):
        """Should join resolved values with the delimiter."""
        resolver = _make_resolver({'A': {'id': 'r-1'}})
        assert resolver.resolve(Join(',', ['x', Ref('A'), 3])) == 'x,r-1,3'

    def test_base64(self):
        """Should base64-encode the rendered text."""
        resolver = _make_resolver({'A': {'id': 'r-1'}})
        encoded = resolver.resolve(Base64(Sub(('#!/bin/sh\necho ', Ref('A')))))
        assert base64.b64decode(encoded).decode() == '#!/bin/sh\necho r-1'

    def test_no_value_removes_key(self):
        """Should drop keys and list items resolving to AWS::NoValue."""
        resolver = _make_resolver()
        resolved = resolver.resolve({'a': PseudoRef('AWS::NoValue'), 'b': [1, PseudoRef('AWS::NoValue')]})
        assert resolved == {'b': [1]}

    def test_stack_name_and_partition_defaults(self):
        """Should resolve StackName locally and fall back for Partition."""
        resolver = _make_resolver()
        assert resolver.resolve(PseudoRef('AWS::StackName')) == 'demo'
        assert resolver.resolve(PseudoRef('AWS::Partition')) == 'aws'

    def test_lookups_are_cached(self):
        """Should call the provider once per distinct lookup."""
        calls = []

        def lookup(kind, key):
            calls.append((kind, key))
            return ['z1', 'z2']

        resolver = _make_resolver(lookup=lookup)
        resolver.resolve([Select(0, GetAZs('r')), Select(1, GetAZs('r'))])
        assert calls == [('availability_zones', 'r')]

"""
Unit tests for type binding and materialization.
"""
import math

import dbstream as db
import pandas as pd
import pytest
from dbstream.binding import compile_setter, normalize_aliases, shape_fields
from dbstream.cache import Cache
from dbstream.exceptions import BindingError, MaterializationError
from dbstream.exceptions import MissingColumnsError, ValidationError
from tests.fixtures.rows import Account, Everything, FrozenPoint, Labelled
from tests.fixtures.rows import NeedsArguments, Person, PositiveOnly, SlottedPoint
from tests.fixtures.rows import Temperature


def _materialize_all(binding, rows):
    """Apply a binding to raw rows projected onto its columns."""
    return [binding.materialize([row[o] for o in binding.ordinals]) for row in rows]


def test_scenario_plain_shape(people_cursor):
    """Columns Id/Name onto Person{Id, Name}"""
    binding = db.bind(Person, None, people_cursor)
    items = _materialize_all(binding, [(1, 'a'), (2, 'b')])

    assert [(p.Id, p.Name) for p in items] == [(1, 'a'), (2, 'b')]


def test_scenario_alias(people_cursor):
    """Alias Label -> Name onto Labelled{Id, Label}"""
    binding = db.bind(Labelled, [('Label', 'Name')], people_cursor)
    items = _materialize_all(binding, [(1, 'a'), (2, 'b')])

    assert [(p.Id, p.Label) for p in items] == [(1, 'a'), (2, 'b')]
    assert binding.fields == ('Id', 'Label')


def test_alias_mapping_accepted():
    binding = db.bind(Labelled, {'Label': 'Name'}, ['Id', 'Name'])
    assert binding.fields == ('Id', 'Label')


def test_alias_none_excludes_field():
    binding = db.bind(Person, [('Name', None)], ['Id', 'Name'])
    person = binding.materialize([5])

    assert binding.fields == ('Id',)
    assert person.Id == 5
    assert person.Name is None


def test_alias_to_unknown_field_fails():
    with pytest.raises(BindingError):
        db.bind(Person, [('Nickname', 'Name')], ['Id', 'Name'])


def test_alias_round_trip_case_insensitive():
    """An alias to a differently-cased column reads that column's value"""
    binding = db.bind(Labelled, [('Label', 'NAME')], ['id', 'name'])
    item = binding.materialize([9, 'x'])
    assert (item.Id, item.Label) == (9, 'x')


def test_two_fields_share_a_column():
    binding = db.bind(Person, [('Name', 'Id')], ['Id'])
    person = binding.materialize([3])

    assert binding.width == 1
    assert (person.Id, person.Name) == (3, 3)


def test_columns_in_ordinal_order():
    """Buffer slots follow column ordinals, not field declaration order"""
    binding = db.bind(Account, None, ['balance', 'extra', 'owner', 'account_id'])

    assert binding.ordinals == (0, 2, 3)
    assert binding.names == ('balance', 'owner', 'account_id')
    account = binding.materialize([10.5, 'zoe', 7])
    assert account == Account(account_id=7, owner='zoe', balance=10.5)


def test_zero_column_projection():
    """No matching columns still yields one default instance per row"""
    binding = db.bind(Everything, None, ['Id', 'Name'])

    assert binding.width == 0
    assert binding.setters == ()
    items = [binding.materialize([]) for _ in range(3)]
    assert len(items) == 3
    assert all(i.Flag is True and i.Count == 7 for i in items)
    assert len({id(i) for i in items}) == 3


def test_missing_columns_ignored_by_default():
    binding = db.bind(Account, None, ['owner'])
    account = binding.materialize(['amy'])
    assert account == Account(owner='amy')


def test_missing_columns_error_lists_every_field():
    with pytest.raises(MissingColumnsError) as exc_info:
        db.bind(Account, None, ['owner'], ignore_missing=False)
    assert exc_info.value.missing == ('account_id', 'balance')


def test_shape_without_zero_arg_constructor():
    with pytest.raises(BindingError, match='zero-argument'):
        db.bind(NeedsArguments, None, ['Id'])


def test_abstract_shape_rejected():
    import abc

    class Base(abc.ABC):
        Id: int = None

        @abc.abstractmethod
        def run(self): ...

    with pytest.raises(BindingError, match='abstract'):
        db.bind(Base, None, ['Id'])


@pytest.mark.parametrize(('shape', 'source'), [
    (None, ['Id']),
    (Person(), ['Id']),
    (Person, None),
])
def test_bind_validation(shape, source):
    with pytest.raises(ValidationError):
        db.bind(shape, None, source)


def test_bind_adapts_dbapi_cursor(mocker):
    raw = mocker.Mock(spec=['description', 'fetchmany'])
    raw.description = [('Id', None), ('Name', None)]

    binding = db.bind(Person, None, raw)

    assert binding.ordinals == (0, 1)
    assert binding.fields == ('Id', 'Name')
    raw.fetchmany.assert_not_called()


def test_bind_adapts_dataframe():
    binding = db.bind(Labelled, {'Label': 'Name'}, pd.DataFrame({'Id': [1], 'Name': ['a']}))
    assert binding.fields == ('Id', 'Label')


def test_bind_unsupported_source():
    with pytest.raises(ValidationError, match='Unsupported'):
        db.bind(Person, None, object())


@pytest.mark.parametrize('aliases', [
    'Label',
    [('Label',)],
    [('', 'Name')],
    [('Label', 5)],
])
def test_bad_aliases(aliases):
    with pytest.raises(ValidationError):
        normalize_aliases(aliases)


def test_frozen_dataclass():
    binding = db.bind(FrozenPoint, None, ['X', 'Y'])
    point = binding.materialize([1, 2])
    assert point == FrozenPoint(1, 2)


def test_slots_shape():
    binding = db.bind(SlottedPoint, None, ['x', 'y'])
    point = binding.materialize([3, 4])
    assert (point.x, point.y) == (3, 4)


def test_property_setter_used():
    assert shape_fields(Temperature) == ('celsius',)
    binding = db.bind(Temperature, None, ['celsius', 'fahrenheit'])
    temp = binding.materialize([100])
    assert temp.fahrenheit == 212


def test_read_only_property_rejected():
    with pytest.raises(BindingError, match='read-only'):
        compile_setter(Temperature, 'fahrenheit')


def test_dict_shape_binds_every_column():
    binding = db.bind(dict, [('label', 'Name'), ('Name', None)], ['Id', 'Name'])
    assert binding.materialize([1, 'a']) == {'Id': 1, 'label': 'a'}


def test_class_level_annotations_and_classvars():
    from typing import ClassVar

    class Row:
        Id: int = None
        kind: ClassVar[str] = 'row'
        _hidden: int = None

    assert shape_fields(Row) == ('Id',)


def test_inherited_fields():
    class Employee(Person):
        Title: str = None

    assert shape_fields(Employee) == ('Id', 'Name', 'Title')


def test_null_markers_become_none(null_markers):
    binding = db.bind(Person, None, ['Id', 'Name'])
    for marker in null_markers:
        person = binding.materialize([marker, 'x'])
        assert person.Id is None
        assert person.Name == 'x'


def test_empty_string_is_not_null():
    binding = db.bind(Person, None, ['Id', 'Name'])
    assert binding.materialize([1, '']).Name == ''


def test_setter_failure_names_field():
    binding = db.bind(PositiveOnly, None, ['value'])

    assert binding.materialize([5]).value == 5
    with pytest.raises(MaterializationError) as exc_info:
        binding.materialize([-1])
    assert exc_info.value.field == 'value'
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_float_value_preserved():
    binding = db.bind(Account, None, ['balance'])
    assert math.isclose(binding.materialize([1.25]).balance, 1.25)


def test_binding_cached_per_signature():
    first = db.bind(Person, None, ['Id', 'Name'])
    second = db.bind(Person, None, ('Id', 'Name'))
    other = db.bind(Person, None, ['Name', 'Id'])

    assert first is second
    assert other is not first
    assert other.ordinals == (0, 1)
    assert other.fields == ('Name', 'Id')


def test_binding_cache_bypass():
    first = db.bind(Person, None, ['Id', 'Name'])
    assert db.bind(Person, None, ['Id', 'Name'], cache=False) is not first


def test_clear_for_shape():
    person = db.bind(Person, None, ['Id', 'Name'])
    account = db.bind(Account, None, ['owner'])

    Cache.get_instance().clear_for_shape(Person)

    assert db.bind(Person, None, ['Id', 'Name']) is not person
    assert db.bind(Account, None, ['owner']) is account


def test_setters_compiled_once():
    assert compile_setter(Person, 'Id') is compile_setter(Person, 'Id')


if __name__ == '__main__':
    __import__('pytest').main([__file__])

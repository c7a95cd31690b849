import enum
import typing
from functools import singledispatch

from active_record.schema import FieldNode


@singledispatch
def to_storage(argument: typing.Any) -> typing.Any:
    return argument


@to_storage.register(enum.Enum)
def _(argument: enum.Enum) -> typing.Any:
    return argument.value


def from_storage(argument: typing.Any, field: FieldNode) -> typing.Any:
    if argument is None:
        return None

    field_type = field.type
    if isinstance(field_type, type) and issubclass(field_type, enum.Enum) and not isinstance(argument, field_type):
        return field_type(argument)
    return argument

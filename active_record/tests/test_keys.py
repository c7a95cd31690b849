import re
import uuid

import pytest

from active_record import Identity, InvalidKeyType, Model, SaRegistry
from active_record.keys import generate_key


keys_registry = SaRegistry()


class Base(Model):
    __abstract__ = True
    registry = keys_registry


class Counter(Base):
    id: Identity[int]
    label: str


class Ticket(Base):
    key_type = "uuid"
    id: Identity[str]
    subject: str


class Event(Base):
    key_type = "ulid"
    id: Identity[str]


class Link(Base):
    key_type = "nanoid"
    id: Identity[str]


class Singleton(Base):
    key_type = "the-one"
    id: Identity[str]


class Sequenced(Base):
    key_type = staticmethod(lambda: "seq-1")
    id: Identity[str]


def test_increment_policy_leaves_key_to_database():
    assert generate_key("increment") is None
    assert Counter.make(label="a").id is None


def test_uuid_policy():
    key = Ticket.make(subject="printer").id

    assert isinstance(key, str)
    assert str(uuid.UUID(key)) == key


def test_ulid_policy():
    key = Event.make().id

    assert re.fullmatch(r"[0-9A-HJKMNP-TV-Z]{26}", key)


def test_nanoid_policy():
    key = Link.make().id

    assert isinstance(key, str)
    assert len(key) == 21


def test_every_make_generates_a_fresh_key():
    assert Ticket.make().id != Ticket.make().id


def test_constant_string_policy():
    assert Singleton.make().id == "the-one"


def test_callable_policy():
    assert Sequenced.make().id == "seq-1"


def test_explicit_key_wins():
    assert Ticket.make(id="custom", subject="printer").id == "custom"


def test_generated_key_is_not_dirty():
    ticket = Ticket.make()

    assert ticket.is_clean()


def test_generator_must_return_string():
    with pytest.raises(InvalidKeyType):
        generate_key(lambda: 42)


def test_rejects_unsupported_policy():
    with pytest.raises(InvalidKeyType):
        generate_key(42)

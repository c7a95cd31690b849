import typing
import uuid

import nanoid
import ulid

from active_record.errors import InvalidKeyType


INCREMENT = "increment"

KeyPolicy = typing.Union[str, typing.Callable[[], str]]


def _uuid() -> str:
    return str(uuid.uuid4())


def _ulid() -> str:
    return str(ulid.new())


def _nanoid() -> str:
    return nanoid.generate()


generators: typing.Dict[str, typing.Callable[[], str]] = {"uuid": _uuid, "ulid": _ulid, "nanoid": _nanoid}


def is_increment(policy: KeyPolicy) -> bool:
    return policy is None or policy == INCREMENT


def generate_key(policy: KeyPolicy) -> typing.Optional[str]:
    """Produce a key for a new row.

    ``None`` means the database assigns the key on insert. Named policies
    (``uuid``, ``ulid``, ``nanoid``) use the matching generator, a callable is
    invoked, and any other string is used verbatim as a constant key.
    """
    if is_increment(policy):
        return None

    if callable(policy):
        key = policy()
    elif isinstance(policy, str):
        key = generators[policy]() if policy in generators else policy
    else:
        raise InvalidKeyType(f"Unsupported key policy {policy!r}")

    if not isinstance(key, str):
        raise InvalidKeyType(f"Key generator returned {type(key).__name__}, expected str")
    return key

import typing

import pytest

from active_record import (
    BelongsTo,
    BoundModel,
    Database,
    HasMany,
    Identity,
    Model,
    NestedTransaction,
    SaRegistry,
    UnsupportedOperation,
    transaction,
)


transaction_registry = SaRegistry()
other_registry = SaRegistry()


class Base(Model):
    __abstract__ = True
    registry = transaction_registry


class Account(Base):
    id: Identity[int]
    owner: str
    balance: int

    entries = HasMany("Entry")


class Entry(Base):
    id: Identity[int]
    account_id: int
    amount: int

    account = BelongsTo(Account)


class Elsewhere(Model):
    registry = other_registry

    id: Identity[int]


class Boom(Exception):
    pass


@pytest.fixture(autouse=True)
async def tables(database: Database) -> typing.AsyncGenerator[None, None]:
    transaction_registry.bind(database)
    await transaction_registry.create_all()
    yield
    await transaction_registry.drop_all()


async def test_commits_on_normal_exit():
    async with transaction(Account, Entry) as (accounts, entries):
        account = await accounts.create(owner="ada", balance=10)
        await entries.create(account_id=account.id, amount=10)

    assert await Account.count() == 1
    assert await Entry.count() == 1


async def test_rolls_back_everything_on_error():
    existing = await Account.create(owner="bob", balance=5)

    with pytest.raises(Boom):
        async with transaction(Account, Entry) as (accounts, entries):
            account = await accounts.create(owner="ada", balance=10)
            await entries.create(account_id=account.id, amount=10)
            loaded = await accounts.find(existing.id)
            loaded.balance = 0
            await loaded.save()
            raise Boom()

    assert await Account.count() == 1
    assert await Entry.count() == 0
    assert (await Account.find(existing.id)).balance == 5


async def test_single_model_yields_bound_model():
    async with transaction(Account) as accounts:
        assert isinstance(accounts, BoundModel)
        assert accounts.model is Account
        await accounts.create(owner="ada", balance=1)

    assert await Account.count() == 1


async def test_uncommitted_writes_are_invisible_outside():
    async with transaction(Account) as accounts:
        await accounts.create(owner="ada", balance=10)

        assert await accounts.count() == 1
        assert await Account.count() == 0

    assert await Account.count() == 1


async def test_loaded_entities_keep_saving_through_the_transaction():
    account = await Account.create(owner="ada", balance=10)

    with pytest.raises(Boom):
        async with transaction(Account) as accounts:
            inside = await accounts.find(account.id)
            inside.balance = 20
            await inside.save()
            raise Boom()

    assert (await Account.find(account.id)).balance == 10


async def test_made_entities_are_bound_too():
    with pytest.raises(Boom):
        async with transaction(Account) as accounts:
            draft = accounts.make(owner="ada", balance=1)
            await draft.save()
            raise Boom()

    assert await Account.count() == 0


async def test_relations_follow_the_parent_transaction():
    with pytest.raises(Boom):
        async with transaction(Account) as accounts:
            account = await accounts.create(owner="ada", balance=10)
            await account.entries.create(amount=10)
            assert len(await account.entries) == 1
            raise Boom()

    assert await Entry.count() == 0


async def test_entities_fall_back_to_database_after_commit():
    async with transaction(Account) as accounts:
        account = await accounts.create(owner="ada", balance=10)

    account.balance = 15
    await account.save()

    assert (await Account.find(account.id)).balance == 15


async def test_nested_transactions_fail_fast():
    async with transaction(Account) as accounts:
        with pytest.raises(NestedTransaction):
            async with transaction(accounts):
                pass

        with pytest.raises(NestedTransaction):
            async with accounts.context.transaction():
                pass


async def test_nesting_with_model_classes_fails_fast():
    async with transaction(Account) as accounts:
        await accounts.create(owner="ada", balance=10)

        with pytest.raises(NestedTransaction):
            async with transaction(Account):
                pass

        with pytest.raises(NestedTransaction):
            async with transaction(Entry):
                pass

        await accounts.create(owner="grace", balance=20)

    assert await Account.count() == 2


async def test_database_rejects_a_second_open_transaction(database):
    async with database.transaction():
        with pytest.raises(NestedTransaction):
            async with database.transaction():
                pass


async def test_transaction_can_reopen_after_the_previous_one_closed():
    async with transaction(Account) as accounts:
        await accounts.create(owner="ada", balance=10)

    async with transaction(Account) as accounts:
        await accounts.create(owner="grace", balance=20)

    assert await Account.count() == 2


async def test_rolled_back_transaction_can_be_followed_by_another():
    with pytest.raises(Boom):
        async with transaction(Account) as accounts:
            await accounts.create(owner="ada", balance=10)
            raise Boom()

    async with transaction(Account) as accounts:
        await accounts.create(owner="grace", balance=20)

    assert [account.owner for account in await Account.all()] == ["grace"]


async def test_nested_transaction_is_an_unsupported_operation():
    assert issubclass(NestedTransaction, UnsupportedOperation)


async def test_requires_models():
    with pytest.raises(TypeError):
        async with transaction():
            pass


async def test_models_must_share_a_database(tmp_path):
    elsewhere = Database.from_url(f"sqlite+aiosqlite:///{tmp_path / 'elsewhere.db'}")
    other_registry.bind(elsewhere)
    try:
        with pytest.raises(UnsupportedOperation):
            async with transaction(Account, Elsewhere):
                pass
    finally:
        await elsewhere.dispose()


async def test_finished_transaction_rejects_statements():
    async with transaction(Account) as accounts:
        context = accounts.context

    with pytest.raises(UnsupportedOperation):
        await Account.query(context).count()

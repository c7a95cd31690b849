import asyncio
import os
import tempfile
import typing
from datetime import datetime

from active_record import BelongsTo, Database, DatabaseConfig, HasMany, Identity, Model, OptimisticLockConflict, transaction


class User(Model):
    timestamps = True
    hidden = ("password",)

    id: Identity[int]
    username: str
    password: typing.Optional[str]
    created_at: datetime
    updated_at: datetime

    posts = HasMany("Post")


class Post(Model):
    timestamps = True
    soft_deletes = True
    versioned = True

    id: Identity[int]
    user_id: int
    title: str
    version: int
    created_at: datetime
    updated_at: datetime
    deleted_at: typing.Optional[datetime]

    author = BelongsTo(User)


async def main(database: Database) -> None:
    Model.registry.bind(database)
    await Model.registry.create_all()

    user = await User.create(username="a@example.com", password="not-a-hash")
    user.username = "b@example.com"
    await user.save()

    async with transaction(User, Post) as (users, posts):
        author = await users.find_or_fail(user.id)
        await author.posts.create(title="Hello")
        await author.posts.create(title="World")

    for post in await Post.with_relations("author").get():
        print(post.title, "by", post.get_relation("author").username)

    first, stale = await Post.find(1), await Post.find(1)
    first.title = "Hello again"
    await first.save()
    stale.title = "Lost update"
    try:
        await stale.save()
    except OptimisticLockConflict as error:
        print(error)

    await first.delete()
    print("visible posts:", await Post.count(), "with trashed:", await Post.with_trashed().count())
    print(user.to_json(), user.etag)


async def run(config: DatabaseConfig) -> None:
    database = Database.from_config(config)
    try:
        await main(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as directory:
        url = os.getenv("ACTIVE_RECORD_DATABASE_URL", f"sqlite+aiosqlite:///{directory}/example.db")
        asyncio.run(run(DatabaseConfig(url=url)))

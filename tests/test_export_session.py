import asyncio

import pytest

from export_session import ExportSession
from mutuals import (
    FOLLOWERS,
    FOLLOWING,
    FileReadError,
    JsonSyntaxError,
    MissingFileError,
    PreconditionError,
    ShapeMismatchError,
)

FOLLOWERS_RAW = '[{"string_list_data":[{"value":"alice"}]},{"string_list_data":[{"value":"bob"}]}]'
FOLLOWING_RAW = '{"relationships_following":[{"title":"bob"},{"title":"carol"}]}'


def reader(raw):
    async def read():
        return raw
    return read


@pytest.fixture
def session():
    return ExportSession()


@pytest.mark.asyncio
async def test_load_both_roles_in_any_order_and_compare(session):
    await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")
    assert not session.ready
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    assert session.ready

    result = session.compare()

    assert result.not_following_back == ["carol"]
    assert result.dont_follow_back == ["alice"]
    assert session.last_result is result
    assert session.last_error is None
    assert session.file_names == {FOLLOWERS: "followers_1.json", FOLLOWING: "following.json"}


@pytest.mark.asyncio
async def test_reupload_replaces_instead_of_merging(session):
    await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")
    await session.load(FOLLOWING, reader('{"relationships_following":[{"title":"dave"}]}'), "following.json")
    assert list(session.following) == ["dave"]


@pytest.mark.asyncio
async def test_failed_reupload_keeps_previous_set(session):
    await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")

    with pytest.raises(ShapeMismatchError):
        await session.load(FOLLOWING, reader('{"foo": []}'), "other.json")

    assert list(session.following) == ["bob", "carol"]
    assert session.file_names[FOLLOWING] == "following.json"
    assert "other.json" in str(session.last_error)


@pytest.mark.asyncio
async def test_failed_parse_does_not_touch_other_role(session):
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    with pytest.raises(JsonSyntaxError):
        await session.load(FOLLOWING, reader("nope"), "following.json")
    assert list(session.followers) == ["alice", "bob"]
    assert len(session.following) == 0


@pytest.mark.asyncio
async def test_error_slot_clears_on_next_success(session):
    with pytest.raises(JsonSyntaxError):
        await session.load(FOLLOWERS, reader("{"), "followers_1.json")
    assert session.last_error
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    assert session.last_error is None


@pytest.mark.asyncio
async def test_missing_file(session):
    with pytest.raises(MissingFileError):
        await session.load(FOLLOWERS, None)
    assert isinstance(session.last_error, MissingFileError)
    assert str(session.last_error) == "Please select a file for followers."


@pytest.mark.asyncio
async def test_read_failure_is_wrapped(session):
    async def broken():
        raise OSError("connection reset")

    with pytest.raises(FileReadError, match="connection reset"):
        await session.load(FOLLOWERS, broken, "followers_1.json")
    assert len(session.followers) == 0


@pytest.mark.asyncio
async def test_unknown_role(session):
    with pytest.raises(ValueError):
        await session.load("likes", reader("[]"), "likes.json")


@pytest.mark.asyncio
async def test_superseded_read_is_dropped(session):
    release_slow = asyncio.Event()

    async def slow():
        await release_slow.wait()
        return '{"relationships_following":[{"title":"stale"}]}'

    slow_task = asyncio.ensure_future(session.load(FOLLOWING, slow, "old.json"))
    await asyncio.sleep(0)
    fresh = await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")
    release_slow.set()
    stale = await slow_task

    assert stale is None
    assert list(fresh) == ["bob", "carol"]
    assert list(session.following) == ["bob", "carol"]
    assert session.file_names[FOLLOWING] == "following.json"


@pytest.mark.asyncio
async def test_reads_for_different_roles_do_not_supersede_each_other(session):
    followers_task = asyncio.ensure_future(session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json"))
    following_task = asyncio.ensure_future(session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json"))
    await asyncio.gather(followers_task, following_task)
    assert session.ready


def test_compare_without_files(session):
    with pytest.raises(PreconditionError):
        session.compare()
    assert session.last_result is None
    assert isinstance(session.last_error, PreconditionError)


@pytest.mark.asyncio
async def test_compare_twice_gives_same_result(session):
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")
    first = session.compare()
    second = session.compare()
    assert first == second
    assert first is not second


@pytest.mark.asyncio
async def test_reset_forgets_everything_and_drops_in_flight_reads(session):
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return FOLLOWING_RAW

    task = asyncio.ensure_future(session.load(FOLLOWING, slow, "following.json"))
    await asyncio.sleep(0)
    session.reset()
    release.set()

    assert await task is None
    assert not session.ready
    assert len(session.followers) == 0
    assert session.last_result is None
    assert session.file_names == {FOLLOWERS: None, FOLLOWING: None}


@pytest.mark.asyncio
async def test_deeply_nested_file_fills_error_slot(session):
    await session.load(FOLLOWING, reader(FOLLOWING_RAW), "following.json")
    with pytest.raises(ShapeMismatchError):
        await session.load(FOLLOWING, reader("[" * 100000 + "]" * 100000), "deep.json")
    assert isinstance(session.last_error, ShapeMismatchError)
    assert list(session.following) == ["bob", "carol"]


@pytest.mark.asyncio
async def test_superseded_read_that_fails_is_dropped(session):
    release_slow = asyncio.Event()

    async def slow_broken():
        await release_slow.wait()
        raise OSError("connection reset")

    slow_task = asyncio.ensure_future(session.load(FOLLOWERS, slow_broken, "old.json"))
    await asyncio.sleep(0)
    await session.load(FOLLOWERS, reader(FOLLOWERS_RAW), "followers_1.json")
    release_slow.set()

    assert await slow_task is None
    assert session.last_error is None
    assert list(session.followers) == ["alice", "bob"]
    assert session.file_names[FOLLOWERS] == "followers_1.json"

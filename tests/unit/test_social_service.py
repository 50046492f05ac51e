import pytest

from core.database import get_session_factory
from core.exceptions import (
    ConflictError,
    PermissionDeniedError,
    PostNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from core.models import Post
from providers.music_provider import TrackSummary
from services.social_service import SocialService
from services.user_service import UserService

pytestmark = pytest.mark.usefixtures("database")


@pytest.fixture
def social():
    return SocialService()


@pytest.fixture
async def accounts():
    users = UserService()
    alice = await users.register("alice", "a@x.com", "pw1234", "pw1234")
    bob = await users.register("bob", "b@x.com", "pw1234", "pw1234")
    return alice, bob


@pytest.fixture
async def bob_post(social, accounts):
    _, bob = accounts
    return await social.create_post(
        bob.id,
        TrackSummary(id="4uLU6hMCjMI75M1A2tKUQC", name="Song", artists=["X", "Y"]),
        "listen to this",
    )


async def like_count(post_id: int) -> int:
    async with get_session_factory()() as session:
        return (await session.get(Post, post_id)).like_count


class TestPosts:
    async def test_create_post_copies_track_metadata(self, bob_post, accounts):
        _, bob = accounts

        assert bob_post["user_id"] == bob.id
        assert bob_post["username"] == "bob"
        assert bob_post["track"]["name"] == "Song"
        assert bob_post["track"]["artists"] == ["X", "Y"]
        assert bob_post["caption"] == "listen to this"
        assert bob_post["like_count"] == 0

    async def test_feed_is_newest_first_with_liked_flag(self, social, accounts, bob_post):
        alice, _ = accounts
        newer = await social.create_post(alice.id, TrackSummary(id="t2", name="Newer"))
        await social.like_post(alice.id, bob_post["id"])

        feed = await social.get_feed(alice.id, 10)

        assert [p["id"] for p in feed] == [newer["id"], bob_post["id"]]
        assert feed[1]["liked_by_me"] is True
        assert feed[0]["liked_by_me"] is False

    async def test_feed_respects_amount(self, social, accounts, bob_post):
        alice, _ = accounts
        await social.create_post(alice.id, TrackSummary(id="t2", name="Newer"))

        assert len(await social.get_feed(alice.id, 1)) == 1

    async def test_only_owner_can_delete_post(self, social, accounts, bob_post):
        alice, bob = accounts

        with pytest.raises(PermissionDeniedError):
            await social.delete_post(alice.id, bob_post["id"])

        await social.like_post(alice.id, bob_post["id"])
        await social.add_comment(alice.id, bob_post["id"], "hi")
        await social.delete_post(bob.id, bob_post["id"])

        with pytest.raises(PostNotFoundError):
            await social.list_comments(bob_post["id"])

    async def test_delete_missing_post(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(PostNotFoundError):
            await social.delete_post(alice.id, 12345)


class TestLikes:
    """Like and unlike are guarded by the database."""

    async def test_like_increments_counter(self, social, accounts, bob_post):
        alice, _ = accounts

        assert await social.like_post(alice.id, bob_post["id"]) == 1
        assert await like_count(bob_post["id"]) == 1

    async def test_like_twice_is_rejected_without_counter_change(
        self, social, accounts, bob_post
    ):
        alice, _ = accounts
        await social.like_post(alice.id, bob_post["id"])

        with pytest.raises(ConflictError):
            await social.like_post(alice.id, bob_post["id"])

        assert await like_count(bob_post["id"]) == 1

    async def test_unlike_without_like_is_rejected_without_counter_change(
        self, social, accounts, bob_post
    ):
        alice, _ = accounts

        with pytest.raises(ConflictError):
            await social.unlike_post(alice.id, bob_post["id"])

        assert await like_count(bob_post["id"]) == 0

    async def test_like_then_unlike(self, social, accounts, bob_post):
        alice, bob = accounts
        await social.like_post(alice.id, bob_post["id"])
        await social.like_post(bob.id, bob_post["id"])

        assert await social.unlike_post(alice.id, bob_post["id"]) == 1

        with pytest.raises(ConflictError):
            await social.unlike_post(alice.id, bob_post["id"])
        assert await like_count(bob_post["id"]) == 1

    async def test_like_missing_post(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(PostNotFoundError):
            await social.like_post(alice.id, 999)


class TestComments:
    async def test_add_and_list_comments(self, social, accounts, bob_post):
        alice, _ = accounts

        comment = await social.add_comment(alice.id, bob_post["id"], "  great <b>track</b> ")
        comments = await social.list_comments(bob_post["id"])

        assert comment["text"] == "great <b>track</b>"
        assert [c["username"] for c in comments] == ["alice"]

        async with get_session_factory()() as session:
            assert (await session.get(Post, bob_post["id"])).comment_count == 1

    @pytest.mark.parametrize("text", [None, "", "   ", "x" * 501])
    async def test_invalid_comment_is_rejected(self, social, accounts, bob_post, text):
        alice, _ = accounts

        with pytest.raises(ValidationError):
            await social.add_comment(alice.id, bob_post["id"], text)

        assert await social.list_comments(bob_post["id"]) == []

    async def test_comment_on_missing_post(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(PostNotFoundError):
            await social.add_comment(alice.id, 999, "hello")


class TestFollows:
    """Follow edges and their counters."""

    async def test_follow_updates_both_counters(self, social, accounts):
        alice, bob = accounts

        counts = await social.follow_user(alice.id, bob.id)

        assert counts == {"followers": 1, "following": 1}
        assert await social.is_following(alice.id, bob.id)
        assert not await social.is_following(bob.id, alice.id)

    async def test_follow_twice_is_rejected(self, social, accounts):
        alice, bob = accounts
        await social.follow_user(alice.id, bob.id)

        with pytest.raises(ConflictError):
            await social.follow_user(alice.id, bob.id)

        profile = await social.get_profile(bob.id, alice.id)
        assert profile["followers"] == 1
        assert profile["is_following"] is True

    async def test_unfollow_without_follow_is_rejected(self, social, accounts):
        alice, bob = accounts

        with pytest.raises(ConflictError):
            await social.unfollow_user(alice.id, bob.id)

        profile = await social.get_profile(bob.id, alice.id)
        assert profile["followers"] == 0

    async def test_follow_then_unfollow(self, social, accounts):
        alice, bob = accounts
        await social.follow_user(alice.id, bob.id)

        counts = await social.unfollow_user(alice.id, bob.id)

        assert counts == {"followers": 0, "following": 0}

    async def test_cannot_follow_self(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(ValidationError):
            await social.follow_user(alice.id, alice.id)

    async def test_cannot_follow_unknown_user(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(UserNotFoundError):
            await social.follow_user(alice.id, 999)


class TestProfiles:
    async def test_profile_includes_posts(self, social, accounts, bob_post):
        alice, bob = accounts

        own = await social.get_profile(bob.id, bob.id)
        seen = await social.get_profile(bob.id, alice.id)

        assert own["is_self"] is True
        assert own["is_following"] is False
        assert [p["id"] for p in seen["posts"]] == [bob_post["id"]]
        assert seen["music_linked"] is False

    async def test_unknown_profile(self, social, accounts):
        alice, _ = accounts

        with pytest.raises(UserNotFoundError):
            await social.get_profile(999, alice.id)

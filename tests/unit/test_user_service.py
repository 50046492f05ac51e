import asyncio
import time

import pytest
from sqlalchemy import func, select

from core.auth import PasswordManager
from core.database import get_session_factory
from core.exceptions import (
    AuthenticationError,
    DuplicateAccountError,
    UserNotFoundError,
    ValidationError,
)
from core.models import Comment, Follow, Like, Post, User
from providers.music_provider import TrackSummary
from services.social_service import SocialService
from services.user_service import UserService


@pytest.fixture
def users():
    return UserService()


@pytest.fixture
def social():
    return SocialService()


async def count_rows(model) -> int:
    async with get_session_factory()() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestPasswordManager:
    def test_hash_and_verify(self):
        hashed = PasswordManager.hash_password("pw1234")

        assert hashed != "pw1234"
        assert PasswordManager.verify_password("pw1234", hashed)
        assert not PasswordManager.verify_password("wrong", hashed)

    def test_hashes_are_salted(self):
        assert PasswordManager.hash_password("pw1234") != PasswordManager.hash_password("pw1234")

    def test_malformed_hash_does_not_verify(self):
        assert not PasswordManager.verify_password("pw1234", "not-a-bcrypt-hash")


@pytest.mark.usefixtures("database")
class TestRegistration:
    """Account creation and uniqueness."""

    async def test_register_creates_user(self, users):
        user = await users.register("alice", "A@X.com", "pw1234", "pw1234")

        assert user.id is not None
        assert user.username == "alice"
        assert user.username_key == "alice"
        assert user.email == "a@x.com"
        assert user.password_hash != "pw1234"
        assert user.followers == 0 and user.following == 0

    async def test_duplicate_username_any_case_is_rejected(self, users):
        await users.register("alice", "a@x.com", "pw1234", "pw1234")

        with pytest.raises(DuplicateAccountError) as exc_info:
            await users.register("ALICE", "other@x.com", "pw1234", "pw1234")

        assert exc_info.value.details["field"] == "username"
        assert await count_rows(User) == 1

    async def test_duplicate_email_any_case_is_rejected(self, users):
        await users.register("alice", "a@x.com", "pw1234", "pw1234")

        with pytest.raises(DuplicateAccountError) as exc_info:
            await users.register("bob", "A@X.COM", "pw1234", "pw1234")

        assert exc_info.value.details["field"] == "email"
        assert await count_rows(User) == 1

    @pytest.mark.parametrize(
        "username,email,password1,password2",
        [
            (None, "a@x.com", "pw1234", "pw1234"),
            ("alice", "", "pw1234", "pw1234"),
            ("alice", "a@x.com", "", ""),
            ("alice", "a@x.com", "pw1234", None),
            ("alice", "not-an-email", "pw1234", "pw1234"),
            ("a", "a@x.com", "pw1234", "pw1234"),
            ("alice", "a@x.com", "pw1234", "pw4321"),
        ],
    )
    async def test_invalid_form_is_rejected(self, users, username, email, password1, password2):
        with pytest.raises(ValidationError):
            await users.register(username, email, password1, password2)

        assert await count_rows(User) == 0


@pytest.mark.usefixtures("database")
class TestAuthentication:
    async def test_correct_password(self, users):
        created = await users.register("alice", "a@x.com", "pw1234", "pw1234")

        user = await users.authenticate("alice", "pw1234")

        assert user.id == created.id

    async def test_username_lookup_is_case_insensitive(self, users):
        await users.register("Alice", "a@x.com", "pw1234", "pw1234")

        user = await users.authenticate("alice", "pw1234")

        assert user.username == "Alice"

    async def test_wrong_password(self, users):
        await users.register("alice", "a@x.com", "pw1234", "pw1234")

        with pytest.raises(AuthenticationError) as exc_info:
            await users.authenticate("alice", "wrong")

        assert exc_info.value.message == "Incorrect username or password."

    async def test_unknown_user(self, users):
        with pytest.raises(UserNotFoundError) as exc_info:
            await users.authenticate("nobody", "pw1234")

        assert exc_info.value.message == "User not found. Please check your username."


class SlowPasswordManager(PasswordManager):
    """Blocks the calling thread the way a real bcrypt round does."""

    @staticmethod
    def hash_password(password: str) -> str:
        time.sleep(0.2)
        return PasswordManager.hash_password(password)

    @staticmethod
    def verify_password(password: str, hashed: str) -> bool:
        time.sleep(0.2)
        return PasswordManager.verify_password(password, hashed)


async def max_loop_stall(operation) -> float:
    """Largest gap a 5 ms ticker sees while `operation` runs."""
    gaps = []
    done = asyncio.Event()

    async def ticker():
        last = time.perf_counter()
        while not done.is_set():
            await asyncio.sleep(0.005)
            now = time.perf_counter()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    await asyncio.sleep(0)
    try:
        await operation
    finally:
        done.set()
        await task
    return max(gaps)


@pytest.mark.usefixtures("database")
class TestPasswordWorkOffTheLoop:
    async def test_register_does_not_stall_other_requests(self):
        users = UserService(SlowPasswordManager())

        stall = await max_loop_stall(users.register("alice", "a@x.com", "pw1234", "pw1234"))

        assert stall < 0.1

    async def test_authenticate_does_not_stall_other_requests(self):
        users = UserService(SlowPasswordManager())
        await users.register("alice", "a@x.com", "pw1234", "pw1234")

        stall = await max_loop_stall(users.authenticate("alice", "pw1234"))

        assert stall < 0.1


@pytest.mark.usefixtures("database")
class TestProfileFields:
    async def test_refresh_token_and_snapshot(self, users):
        user = await users.register("alice", "a@x.com", "pw1234", "pw1234")

        await users.set_refresh_token(user.id, "refresh-1")
        await users.update_profile_snapshot(
            user.id, "https://img.test/me.png", [{"id": "t1"}], [{"id": "a1"}]
        )

        stored = await users.get_user(user.id)
        assert stored.refresh_token == "refresh-1"
        assert stored.profile_picture_url == "https://img.test/me.png"
        assert stored.top_tracks == [{"id": "t1"}]
        assert stored.top_artists == [{"id": "a1"}]
        assert stored.profile_synced_at is not None


@pytest.mark.usefixtures("database")
class TestDeleteUser:
    """Account deletion removes owned rows and fixes counters."""

    async def test_delete_unknown_user(self, users):
        assert await users.delete_user(999) is False

    async def test_delete_cascades_and_fixes_counters(self, users, social):
        alice = await users.register("alice", "a@x.com", "pw1234", "pw1234")
        bob = await users.register("bob", "b@x.com", "pw1234", "pw1234")
        carol = await users.register("carol", "c@x.com", "pw1234", "pw1234")

        bob_post = await social.create_post(bob.id, TrackSummary(id="t1", name="One"))
        alice_post = await social.create_post(alice.id, TrackSummary(id="t2", name="Two"))

        await social.like_post(alice.id, bob_post["id"])
        await social.like_post(bob.id, alice_post["id"])
        await social.add_comment(alice.id, bob_post["id"], "nice")
        await social.add_comment(alice.id, bob_post["id"], "really nice")
        await social.add_comment(carol.id, bob_post["id"], "agreed")
        await social.follow_user(alice.id, bob.id)
        await social.follow_user(carol.id, alice.id)

        assert await users.delete_user(alice.id) is True

        assert await users.get_user(alice.id) is None
        assert await users.get_by_username("alice") is None

        bob_after = await users.get_user(bob.id)
        carol_after = await users.get_user(carol.id)
        assert bob_after.followers == 0
        assert carol_after.following == 0

        async with get_session_factory()() as session:
            post = await session.get(Post, bob_post["id"])
            assert post.like_count == 0
            assert post.comment_count == 1

        assert await count_rows(Post) == 1
        assert await count_rows(Like) == 0
        assert await count_rows(Comment) == 1
        assert await count_rows(Follow) == 0

    async def test_deleted_user_cannot_log_in(self, users):
        alice = await users.register("alice", "a@x.com", "pw1234", "pw1234")
        await users.delete_user(alice.id)

        with pytest.raises(UserNotFoundError):
            await users.authenticate("alice", "pw1234")

    async def test_username_can_be_reused_after_deletion(self, users):
        alice = await users.register("alice", "a@x.com", "pw1234", "pw1234")
        await users.delete_user(alice.id)

        again = await users.register("alice", "a@x.com", "pw1234", "pw1234")

        assert again.id is not None

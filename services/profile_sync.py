"""
Profile Sync Pipeline.

After login (and after linking a music account) the user's denormalized
profile snapshot is refreshed from the music API by an ordered chain of named
steps:

    access_token -> top_tracks -> top_artists -> profile_picture -> persist

Each step reads only the immutable `SyncContext` it is handed and returns a
value; the pipeline folds that value into a new context for the next step.
Every step produces a `StepResult` with a typed outcome. The run stops at the
first failing step and reports it in the `SyncResult`, so a caller can render
a message naming exactly what went wrong without any later step executing.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.exceptions import ExternalServiceError, MusicShareException
from core.logging_config import get_logger
from providers.music_provider import MusicProvider, SERVICE_NAME
from services.token_manager import TokenManager

logger = get_logger(__name__)

STEP_FAILURE_MESSAGES = {
    "access_token": "Failed to refresh music access token",
    "top_tracks": "Failed to fetch top tracks",
    "top_artists": "Failed to fetch top artists",
    "profile_picture": "Failed to fetch profile picture",
    "persist": "Failed to save music profile",
}

SnapshotSink = Callable[
    [int, Optional[str], List[Dict[str, Any]], List[Dict[str, Any]]], Awaitable[None]
]


@dataclass(frozen=True)
class SyncContext:
    """Inputs and accumulated outputs of one pipeline run"""

    session_id: str
    user_id: int
    access_token: Optional[str] = None
    top_tracks: Tuple[Dict[str, Any], ...] = ()
    top_artists: Tuple[Dict[str, Any], ...] = ()
    profile_picture_url: Optional[str] = None


@dataclass
class StepResult:
    name: str
    ok: bool
    value: Any = None
    error: Optional[MusicShareException] = None


@dataclass
class SyncResult:
    ok: bool
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[MusicShareException] = None
    context: Optional[SyncContext] = None

    @property
    def message(self) -> Optional[str]:
        if self.ok:
            return None
        return STEP_FAILURE_MESSAGES.get(self.failed_step, "Profile sync failed")

    def raise_for_failure(self) -> None:
        """Re-raise a failed run as an error carrying the step-typed message"""
        if self.ok:
            return
        if isinstance(self.error, ExternalServiceError) or self.error is None:
            error = ExternalServiceError(SERVICE_NAME, self.message)
            error.details["step"] = self.failed_step
            raise error
        raise self.error


class ProfileSyncPipeline:
    """Ordered profile refresh from the music API"""

    def __init__(
        self,
        token_manager: TokenManager,
        provider: MusicProvider,
        snapshot_sink: SnapshotSink,
        top_limit: int = 10,
    ):
        self.token_manager = token_manager
        self.provider = provider
        self.snapshot_sink = snapshot_sink
        self.top_limit = top_limit
        # (step name, coroutine, context field receiving the result)
        self.steps: List[Tuple[str, Callable[[SyncContext], Awaitable[Any]], Optional[str]]] = [
            ("access_token", self._access_token, "access_token"),
            ("top_tracks", self._top_tracks, "top_tracks"),
            ("top_artists", self._top_artists, "top_artists"),
            ("profile_picture", self._profile_picture, "profile_picture_url"),
            ("persist", self._persist, None),
        ]

    async def run(self, session_id: str, user_id: int) -> SyncResult:
        context = SyncContext(session_id=session_id, user_id=user_id)
        completed: List[str] = []

        for name, step, output in self.steps:
            result = await self._run_step(name, step, context)
            if not result.ok:
                logger.warning(
                    f"Profile sync stopped at step '{name}': {result.error.message}",
                    extra={"user_id": user_id, "step": name},
                )
                return SyncResult(
                    ok=False,
                    completed_steps=completed,
                    failed_step=name,
                    error=result.error,
                    context=context,
                )

            if output is not None:
                context = replace(context, **{output: result.value})
            completed.append(name)

        logger.info("Profile sync completed", extra={"user_id": user_id})
        return SyncResult(ok=True, completed_steps=completed, context=context)

    @staticmethod
    async def _run_step(
        name: str, step: Callable[[SyncContext], Awaitable[Any]], context: SyncContext
    ) -> StepResult:
        try:
            value = await step(context)
        except MusicShareException as e:
            return StepResult(name=name, ok=False, error=e)
        return StepResult(name=name, ok=True, value=value)

    async def _access_token(self, context: SyncContext) -> str:
        return await self.token_manager.ensure_access_token(context.session_id)

    async def _top_tracks(self, context: SyncContext) -> Tuple[Dict[str, Any], ...]:
        tracks = await self.provider.get_top_tracks(context.access_token, self.top_limit)
        return tuple(track.to_dict() for track in tracks)

    async def _top_artists(self, context: SyncContext) -> Tuple[Dict[str, Any], ...]:
        artists = await self.provider.get_top_artists(context.access_token, self.top_limit)
        return tuple(artist.to_dict() for artist in artists)

    async def _profile_picture(self, context: SyncContext) -> Optional[str]:
        profile = await self.provider.get_current_user_profile(context.access_token)
        images = profile.get("images") or []
        return images[0].get("url") if images else None

    async def _persist(self, context: SyncContext) -> None:
        await self.snapshot_sink(
            context.user_id,
            context.profile_picture_url,
            list(context.top_tracks),
            list(context.top_artists),
        )

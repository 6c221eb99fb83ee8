"""Cache invalidation fan-out for domain mutations.

Each mutable entity type maps to an ``InvalidationPlan``: the explicit keys
and wildcard patterns whose cached data depends on that entity. Applying a
plan never raises; a failed invalidation is logged and left to TTL expiry.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.exceptions import ConnectivityError
from examprep.app.services.cache_keys import CacheKeys
from examprep.app.services.cache_store import CacheStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class InvalidationPlan:
    """Keys deleted with one batch call plus patterns deleted by scan."""
    keys: tuple[str, ...] = field(default_factory=tuple)
    patterns: tuple[str, ...] = field(default_factory=tuple)


def flashcard_plan(flashcard_id: str, deck_id: str, class_id: str) -> InvalidationPlan:
    return InvalidationPlan(
        keys=(
            CacheKeys.deck_flashcards(deck_id),
            CacheKeys.domain_flashcards(class_id),
        ),
        patterns=(CacheKeys.class_all_users(class_id),),
    )


def deck_plan(deck_id: str, class_id: str) -> InvalidationPlan:
    return InvalidationPlan(
        keys=(
            CacheKeys.domains_all(),
            CacheKeys.deck_flashcards(deck_id),
            CacheKeys.domain_flashcards(class_id),
            CacheKeys.deck_quiz_questions(deck_id),
            CacheKeys.deck_quiz_has_quiz(deck_id),
        ),
        patterns=(CacheKeys.class_all_users(class_id),),
    )


def class_plan(class_id: str) -> InvalidationPlan:
    return InvalidationPlan(
        keys=(
            CacheKeys.domains_all(),
            CacheKeys.domain_flashcards(class_id),
        ),
        patterns=(CacheKeys.class_all_users(class_id),),
    )


def user_progress_plan(user_id: str, flashcard_id: str, class_id: str) -> InvalidationPlan:
    # Progress shows up in every user's class view through aggregate counts
    return InvalidationPlan(
        keys=(CacheKeys.progress_card(user_id, flashcard_id),),
        patterns=(CacheKeys.class_all_users(class_id),),
    )


def deck_quiz_plan(deck_id: str, class_id: str) -> InvalidationPlan:
    return InvalidationPlan(
        keys=(
            CacheKeys.deck_quiz_questions(deck_id),
            CacheKeys.deck_quiz_has_quiz(deck_id),
            CacheKeys.deck_flashcards(deck_id),
        ),
        patterns=(CacheKeys.class_all_users(class_id),),
    )


def user_plan(user_id: str) -> InvalidationPlan:
    return InvalidationPlan(
        patterns=(
            CacheKeys.progress_user_all(user_id),
            CacheKeys.class_all_for_user(user_id),
        ),
    )


async def safe_invalidate(invalidate: Callable[[], Awaitable[object]]) -> bool:
    """Run an invalidation without letting it fail the calling request.

    Returns:
        True if the invalidation completed, False if it raised.
    """
    try:
        await invalidate()
    except Exception as e:
        logger.error(f"Cache invalidation error: {e}", exc_info=True)
        return False
    return True


class CacheInvalidation:
    """Invalidation entry points, one per mutable entity type.

    Call the matching method after a successful write. Every method is safe:
    it logs and swallows errors instead of raising.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    async def apply(self, plan: InvalidationPlan) -> int:
        """Delete a plan's keys and patterns. May raise; prefer the entity methods.

        Every pattern is attempted even after an earlier delete failed.

        Raises:
            ConnectivityError: A batch or pattern delete did not complete.
        """
        if not self._store.is_enabled:
            return 0

        deleted = 0
        failed: list[str] = []
        if plan.keys:
            if await self._store.delete_many(list(plan.keys)):
                deleted += len(plan.keys)
            else:
                failed.extend(plan.keys)
        for pattern in plan.patterns:
            count = await self._store.delete_pattern(pattern)
            if count is None:
                failed.append(pattern)
            else:
                deleted += count

        if failed:
            raise ConnectivityError(f"Cache invalidation failed for {', '.join(failed)}")
        return deleted

    async def _run(self, plan: InvalidationPlan, description: str) -> bool:
        ok = await safe_invalidate(lambda: self.apply(plan))
        if ok:
            logger.info(
                f"Cache invalidated for {description}",
                extra=get_log_context(keys=list(plan.keys), patterns=list(plan.patterns)),
            )
        return ok

    async def flashcard_changed(self, flashcard_id: str, deck_id: str, class_id: str) -> bool:
        """A flashcard was created, updated or deleted."""
        return await self._run(
            flashcard_plan(flashcard_id, deck_id, class_id), f"flashcard {flashcard_id}"
        )

    async def deck_changed(self, deck_id: str, class_id: str) -> bool:
        """A deck was created, updated or deleted."""
        return await self._run(deck_plan(deck_id, class_id), f"deck {deck_id}")

    async def class_changed(self, class_id: str) -> bool:
        """A class was created, updated or deleted."""
        return await self._run(class_plan(class_id), f"class {class_id}")

    async def user_progress_changed(
        self, user_id: str, flashcard_id: str, class_id: str
    ) -> bool:
        return await self._run(
            user_progress_plan(user_id, flashcard_id, class_id),
            f"user {user_id} progress on flashcard {flashcard_id}",
        )

    async def deck_quiz_changed(self, deck_id: str, class_id: str) -> bool:
        """A deck quiz was created, updated or deleted."""
        return await self._run(deck_quiz_plan(deck_id, class_id), f"deck quiz {deck_id}")

    async def user_changed(self, user_id: str) -> bool:
        """Drop everything cached for one user."""
        return await self._run(user_plan(user_id), f"user {user_id}")

    async def invalidate_all(self) -> bool:
        """Drop every key in the store. Use sparingly."""
        logger.warning("Invalidating entire cache")
        return await self._run(InvalidationPlan(patterns=("*",)), "all keys")

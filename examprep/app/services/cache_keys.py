"""Cache key builders and TTL table.

Centralized location for every cache key and wildcard pattern so producers
(``CacheStore.get_or_set`` call sites) and ``CacheInvalidation`` always agree.
"""


class CacheKeys:
    """Deterministic key and pattern builders, one per access pattern."""

    # All domains/classes list
    @staticmethod
    def domains_all() -> str:
        return "domains:all"

    # Class details with user-specific progress
    @staticmethod
    def class_details(class_id: str, user_id: str) -> str:
        return f"class:{class_id}:user:{user_id}"

    @staticmethod
    def class_all_users(class_id: str) -> str:
        """Pattern matching every user's view of a class."""
        return f"class:{class_id}:user:*"

    @staticmethod
    def class_all_for_user(user_id: str) -> str:
        """Pattern matching one user's view of every class."""
        return f"class:*:user:{user_id}"

    # All flashcards for a domain (class)
    @staticmethod
    def domain_flashcards(domain_id: str) -> str:
        return f"domain:{domain_id}:flashcards"

    @staticmethod
    def deck_flashcards(deck_id: str) -> str:
        return f"deck:{deck_id}:flashcards"

    @staticmethod
    def progress_card(user_id: str, card_id: str) -> str:
        return f"progress:{user_id}:card:{card_id}"

    @staticmethod
    def progress_user_all(user_id: str) -> str:
        return f"progress:{user_id}:*"

    @staticmethod
    def bookmarks_user_list(user_id: str) -> str:
        return f"bookmarks:user:{user_id}:list"

    @staticmethod
    def bookmarks_check(user_id: str, flashcard_id: str) -> str:
        return f"bookmarks:user:{user_id}:card:{flashcard_id}"

    @staticmethod
    def bookmarks_user_all(user_id: str) -> str:
        return f"bookmarks:user:{user_id}:*"

    @staticmethod
    def deck_quiz_questions(deck_id: str) -> str:
        return f"deck:{deck_id}:quiz"

    @staticmethod
    def deck_quiz_has_quiz(deck_id: str) -> str:
        return f"deck:{deck_id}:has-quiz"


class CacheTTL:
    """Cache TTL (time to live) values in seconds, by data volatility."""

    DOMAINS_LIST = 5 * 60      # rarely changes
    CLASS_DETAILS = 2 * 60     # carries user progress
    FLASHCARD_LISTS = 10 * 60  # content rarely changes
    USER_PROGRESS = 1 * 60     # updates frequently
    BOOKMARKS = 5 * 60
    DECK_QUIZ = 10 * 60

    SHORT = 30
    LONG = 60 * 60

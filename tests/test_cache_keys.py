"""Tests for cache key builders and the TTL table."""

import fnmatch

from examprep.app.services.cache_keys import CacheKeys, CacheTTL


class TestCacheKeys:
    """Key formats are shared by producers and invalidation, so pin them."""

    def test_key_formats(self):
        assert CacheKeys.domains_all() == "domains:all"
        assert CacheKeys.class_details("c1", "u1") == "class:c1:user:u1"
        assert CacheKeys.domain_flashcards("c1") == "domain:c1:flashcards"
        assert CacheKeys.deck_flashcards("d1") == "deck:d1:flashcards"
        assert CacheKeys.progress_card("u1", "f1") == "progress:u1:card:f1"
        assert CacheKeys.bookmarks_user_list("u1") == "bookmarks:user:u1:list"
        assert CacheKeys.bookmarks_check("u1", "f1") == "bookmarks:user:u1:card:f1"
        assert CacheKeys.deck_quiz_questions("d1") == "deck:d1:quiz"
        assert CacheKeys.deck_quiz_has_quiz("d1") == "deck:d1:has-quiz"

    def test_patterns_match_their_keys(self):
        assert fnmatch.fnmatchcase(
            CacheKeys.class_details("c1", "u9"), CacheKeys.class_all_users("c1")
        )
        assert fnmatch.fnmatchcase(
            CacheKeys.class_details("c7", "u1"), CacheKeys.class_all_for_user("u1")
        )
        assert fnmatch.fnmatchcase(
            CacheKeys.progress_card("u1", "f3"), CacheKeys.progress_user_all("u1")
        )
        assert fnmatch.fnmatchcase(
            CacheKeys.bookmarks_check("u1", "f3"), CacheKeys.bookmarks_user_all("u1")
        )

    def test_patterns_do_not_cross_entities(self):
        assert not fnmatch.fnmatchcase(
            CacheKeys.class_details("c2", "u1"), CacheKeys.class_all_users("c1")
        )
        assert not fnmatch.fnmatchcase(
            CacheKeys.progress_card("u2", "f1"), CacheKeys.progress_user_all("u1")
        )


class TestCacheTTL:
    """Tests for the TTL table."""

    def test_values_in_seconds(self):
        assert CacheTTL.DOMAINS_LIST == 300
        assert CacheTTL.CLASS_DETAILS == 120
        assert CacheTTL.FLASHCARD_LISTS == 600
        assert CacheTTL.USER_PROGRESS == 60
        assert CacheTTL.BOOKMARKS == 300
        assert CacheTTL.DECK_QUIZ == 600
        assert CacheTTL.SHORT == 30
        assert CacheTTL.LONG == 3600

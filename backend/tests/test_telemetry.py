"""
Tests for telemetry.py - episode lifecycle, windowed metrics and
single-episode analysis.
"""
import pytest
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.episode import Episode, EpisodeStatus
from app.schemas.strategy import MAX_ERROR_MESSAGE_LEN, EpisodeCreate
from app.services.telemetry import (
    analyze_episode,
    calculate_metrics,
    complete_episode,
    count_terminal_episodes,
    create_episode,
    episode_counts_by_version,
    episode_history,
    episode_save_rate,
    fail_episode,
    record_episode,
    start_episode,
    summarize_episodes,
)

from tests.fixtures.strategy_fixtures import make_topic, record_completed, record_failed, sources


class TestSaveRate:

    def test_two_of_three(self):
        assert episode_save_rate(["a", "b", "c"], ["a", "b"]) == pytest.approx(2 / 3)

    def test_nothing_returned_scores_zero(self):
        assert episode_save_rate([], []) == 0.0

    def test_nothing_saved(self):
        assert episode_save_rate(["a", "b"], []) == 0.0


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

class TestRecordEpisode:

    def test_records_completed_episode(self, db):
        topic = make_topic(db)
        episode = record_completed(db, topic.id, 0, returned=3, saved=2, followups=1)

        assert episode.status == EpisodeStatus.COMPLETED
        assert episode.completed_at is not None
        assert len(episode.sources_saved) == 2

    def test_idempotent_by_episode_id(self, db):
        topic = make_topic(db)
        episode_id = uuid4()
        kwargs = dict(
            topic_id=topic.id,
            strategy_version=0,
            query="solid-state battery startups",
            status=EpisodeStatus.COMPLETED,
            sources_returned=sources(2),
            sources_saved=sources(1),
            episode_id=episode_id,
        )
        first = record_episode(db, **kwargs)
        second = record_episode(db, **kwargs)

        assert first.id == second.id == episode_id
        assert db.query(Episode).count() == 1

    def test_saved_must_be_subset_of_returned(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_episode(
                db,
                topic_id=topic.id,
                strategy_version=0,
                query="q",
                status=EpisodeStatus.COMPLETED,
                sources_returned=["a"],
                sources_saved=["b"],
            )

    def test_failed_requires_error_message(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_episode(db, topic_id=topic.id, strategy_version=0, query="q", status=EpisodeStatus.FAILED)

    def test_over_long_error_message_rejected(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_failed(db, topic.id, 0, error_message="x" * (MAX_ERROR_MESSAGE_LEN + 1))
        assert db.query(Episode).count() == 0

    def test_error_message_at_limit_kept_whole(self, db):
        topic = make_topic(db)
        message = "x" * MAX_ERROR_MESSAGE_LEN
        assert record_failed(db, topic.id, 0, error_message=message).error_message == message

    def test_only_failed_carries_error_message(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_episode(
                db,
                topic_id=topic.id,
                strategy_version=0,
                query="q",
                status=EpisodeStatus.COMPLETED,
                error_message="boom",
            )

    def test_negative_followups_rejected(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_episode(
                db,
                topic_id=topic.id,
                strategy_version=0,
                query="q",
                status=EpisodeStatus.COMPLETED,
                followup_count=-1,
            )

    def test_unknown_status_rejected(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            record_episode(db, topic_id=topic.id, strategy_version=0, query="q", status="paused")

    def test_unknown_strategy_version(self, db):
        topic = make_topic(db)
        with pytest.raises(NotFoundError):
            record_completed(db, topic.id, 7, returned=1, saved=1)

    def test_unknown_topic(self, db):
        with pytest.raises(NotFoundError):
            record_completed(db, uuid4(), 0, returned=1, saved=1)


class TestLifecycle:

    def test_pending_running_completed(self, db, no_broker):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query=" lithium prices "))
        assert episode.status == EpisodeStatus.PENDING
        assert episode.query == "lithium prices"

        start_episode(db, episode.id)
        assert episode.status == EpisodeStatus.RUNNING
        assert episode.started_at is not None

        complete_episode(db, episode.id, sources_returned=sources(4), sources_saved=sources(1), followup_count=2)
        assert episode.status == EpisodeStatus.COMPLETED
        assert episode.followup_count == 2

        assert no_broker == [
            ("app.services.evolution.run_evolution_cycle", [str(topic.id)], {"queue": "evolution"})
        ]

    def test_fail_from_pending(self, db, no_broker):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))

        fail_episode(db, episode.id, "connector crashed")
        assert episode.status == EpisodeStatus.FAILED
        assert episode.error_message == "connector crashed"
        assert len(no_broker) == 1

    def test_trigger_can_be_disabled(self, db, no_broker):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))
        start_episode(db, episode.id)
        complete_episode(db, episode.id, sources_returned=[], sources_saved=[], trigger_evolution=False)
        assert no_broker == []

    def test_terminal_states_are_final(self, db):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))
        fail_episode(db, episode.id, "boom")

        with pytest.raises(ConflictError):
            start_episode(db, episode.id)

    def test_cannot_complete_pending(self, db):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))
        with pytest.raises(ConflictError):
            complete_episode(db, episode.id, sources_returned=[], sources_saved=[])

    def test_fail_needs_message(self, db):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))
        with pytest.raises(ValidationError):
            fail_episode(db, episode.id, "   ")

    def test_fail_rejects_over_long_message(self, db, no_broker):
        topic = make_topic(db)
        episode = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q"))

        with pytest.raises(ValidationError):
            fail_episode(db, episode.id, "stack trace " * 100)
        db.refresh(episode)
        assert episode.status == EpisodeStatus.PENDING
        assert episode.error_message is None
        assert no_broker == []

    def test_create_episode_idempotent(self, db):
        topic = make_topic(db)
        data = EpisodeCreate(topic_id=topic.id, strategy_version=0, query="q", id=uuid4())
        assert create_episode(db, data).id == create_episode(db, data).id
        assert db.query(Episode).count() == 1

    def test_empty_query_rejected(self):
        with pytest.raises(PydanticValidationError):
            EpisodeCreate(topic_id=uuid4(), strategy_version=0, query="   ")


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestCalculateMetrics:

    def test_no_episodes(self, db):
        topic = make_topic(db)
        metrics = calculate_metrics(db, topic.id)
        assert metrics.episode_count == 0
        assert metrics.avg_save_rate == 0.0
        assert metrics.failure_rate == 0.0

    def test_averages_over_episodes(self, db):
        topic = make_topic(db)
        record_completed(db, topic.id, 0, returned=3, saved=2, followups=2, offset_seconds=1)
        record_completed(db, topic.id, 0, returned=2, saved=0, followups=4, offset_seconds=2)

        metrics = calculate_metrics(db, topic.id)
        assert metrics.episode_count == 2
        assert metrics.avg_save_rate == pytest.approx((2 / 3 + 0) / 2)
        assert metrics.avg_followup_count == pytest.approx(3.0)
        assert metrics.total_sources_returned == 5
        assert metrics.total_sources_saved == 2

    def test_failure_rate(self, db):
        topic = make_topic(db)
        record_completed(db, topic.id, 0, returned=2, saved=2, offset_seconds=1)
        record_failed(db, topic.id, 0, offset_seconds=2)
        record_failed(db, topic.id, 0, offset_seconds=3)
        record_completed(db, topic.id, 0, returned=2, saved=1, offset_seconds=4)

        metrics = calculate_metrics(db, topic.id)
        assert metrics.failure_rate == pytest.approx(0.5)

    def test_pending_and_running_excluded(self, db):
        topic = make_topic(db)
        record_completed(db, topic.id, 0, returned=2, saved=2)
        create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="in flight"))
        running = create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="running"))
        start_episode(db, running.id)

        metrics = calculate_metrics(db, topic.id)
        assert metrics.episode_count == 1
        assert count_terminal_episodes(db, topic.id) == 1

    def test_window_keeps_most_recent(self, db):
        topic = make_topic(db)
        # Old episodes saved nothing, recent ones saved everything
        for i in range(3):
            record_completed(db, topic.id, 0, returned=2, saved=0, offset_seconds=i)
        newest = None
        for i in range(3, 5):
            newest = record_completed(db, topic.id, 0, returned=2, saved=2, offset_seconds=i)

        metrics = calculate_metrics(db, topic.id, window_size=2)
        assert metrics.episode_count == 2
        assert metrics.avg_save_rate == 1.0
        assert metrics.newest_episode_id == newest.id

    def test_restricted_to_version(self, db):
        from app.services.strategy_store import create_version
        from app.schemas.strategy import StrategyPayload

        topic = make_topic(db)
        create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=50)
        record_completed(db, topic.id, 0, returned=2, saved=0, offset_seconds=1)
        record_completed(db, topic.id, 1, returned=2, saved=2, offset_seconds=2)

        assert calculate_metrics(db, topic.id, version=0).avg_save_rate == 0.0
        assert calculate_metrics(db, topic.id, version=1).avg_save_rate == 1.0
        assert calculate_metrics(db, topic.id).episode_count == 2
        assert episode_counts_by_version(db, topic.id) == [
            {"version": 0, "count": 1},
            {"version": 1, "count": 1},
        ]

    def test_rejects_non_positive_window(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            calculate_metrics(db, topic.id, window_size=0)

    def test_summarize_is_pure(self):
        topic_id = uuid4()
        episodes = [
            Episode(
                id=uuid4(),
                topic_id=topic_id,
                strategy_version=0,
                query="q",
                status=EpisodeStatus.COMPLETED,
                sources_returned=["a", "b"],
                sources_saved=["a"],
                followup_count=6,
            )
        ]
        metrics = summarize_episodes(topic_id, episodes, version=0, window_size=10)
        assert metrics.avg_save_rate == 0.5
        assert metrics.avg_followup_count == 6.0
        assert metrics.window_size == 10


class TestAnalyzeEpisode:

    def test_failed_recommends_rollback(self, db):
        topic = make_topic(db)
        episode = record_failed(db, topic.id, 0)
        assert analyze_episode(db, episode.id).recommendation == "rollback"

    def test_low_save_rate_recommends_evolve(self, db):
        topic = make_topic(db)
        episode = record_completed(db, topic.id, 0, returned=10, saved=1)
        analysis = analyze_episode(db, episode.id)
        assert analysis.recommendation == "evolve"
        assert "10%" in analysis.reason

    def test_many_followups_recommends_evolve(self, db):
        topic = make_topic(db)
        episode = record_completed(db, topic.id, 0, returned=2, saved=1, followups=11)
        assert analyze_episode(db, episode.id).recommendation == "evolve"

    def test_high_save_rate_keeps(self, db):
        topic = make_topic(db)
        episode = record_completed(db, topic.id, 0, returned=4, saved=4)
        analysis = analyze_episode(db, episode.id)
        assert analysis.recommendation == "keep"
        assert analysis.save_rate == 1.0

    def test_unknown_episode(self, db):
        with pytest.raises(NotFoundError):
            analyze_episode(db, uuid4())


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class TestEpisodeHistory:

    def test_serializes_every_status_newest_first(self, db):
        topic = make_topic(db)
        older = record_completed(db, topic.id, 0, returned=3, saved=1, offset_seconds=1)
        newer = record_failed(db, topic.id, 0, offset_seconds=2)
        create_episode(db, EpisodeCreate(topic_id=topic.id, strategy_version=0, query="pending run"))

        history = episode_history(db, topic.id)

        assert [row["status"] for row in history] == [
            EpisodeStatus.PENDING,
            EpisodeStatus.FAILED,
            EpisodeStatus.COMPLETED,
        ]
        assert history[1]["id"] == str(newer.id)
        assert history[1]["error_message"] == "search provider timed out"
        assert history[2]["id"] == str(older.id)
        assert history[2]["sources_saved"] == sources(1)
        assert history[2]["topic_id"] == str(topic.id)

    def test_filters_by_version_and_limit(self, db):
        from app.services.strategy_store import create_version
        from app.schemas.strategy import StrategyPayload

        topic = make_topic(db)
        create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=50)
        for i in range(3):
            record_completed(db, topic.id, 0, returned=1, saved=1, offset_seconds=i)
        record_completed(db, topic.id, 1, returned=1, saved=0, offset_seconds=10)

        assert len(episode_history(db, topic.id, version=0)) == 3
        assert len(episode_history(db, topic.id, limit=2)) == 2
        assert [row["strategy_version"] for row in episode_history(db, topic.id, version=1)] == [1]

    def test_unknown_topic_is_empty(self, db):
        assert episode_history(db, uuid4()) == []

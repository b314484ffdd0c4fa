"""
Tests for strategy_store.py - version lineage and the single-active invariant.
"""
import pytest
from uuid import uuid4

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.strategy_config import StrategyConfig, StrategyStatus
from app.models.topic import Topic
from app.schemas.strategy import ModelTier, SearchDepth, StrategyPayload
from app.services.strategy_store import (
    archive,
    create_version,
    default_payload,
    get_active,
    get_candidate,
    get_version,
    lineage,
    list_versions,
    model_for_tier,
    payload_of,
    promote,
    promote_with_retry,
    update_rollout,
    validate_rollout,
)

from tests.fixtures.strategy_fixtures import PREMIUM_PAYLOAD, make_topic


def _active_rows(db, topic_id):
    return (
        db.query(StrategyConfig)
        .filter(StrategyConfig.topic_id == topic_id, StrategyConfig.status == StrategyStatus.ACTIVE)
        .all()
    )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class TestBootstrap:

    def test_new_topic_gets_version_zero_active_at_full_rollout(self, db):
        topic = make_topic(db)

        active = get_active(db, topic.id)
        assert active.version == 0
        assert active.status == StrategyStatus.ACTIVE
        assert active.rollout_percentage == 100
        assert active.parent_version is None
        assert topic.active_version == 0

    def test_bootstrap_uses_default_payload_when_none_given(self, db):
        topic = make_topic(db)
        assert payload_of(get_active(db, topic.id)) == default_payload()

    def test_bootstrap_keeps_caller_payload(self, db):
        topic = make_topic(db, payload=PREMIUM_PAYLOAD)
        payload = payload_of(get_active(db, topic.id))
        assert payload.model_tier == ModelTier.PREMIUM

    def test_bootstrap_rejects_malformed_payload(self, db):
        with pytest.raises(ValidationError):
            make_topic(db, payload={"model_tier": "ultra"})

    def test_bootstrap_ignores_requested_status_and_rollout(self, db):
        topic = Topic(title="Bare topic")
        db.add(topic)
        db.commit()

        config = create_version(db, topic.id, default_payload(), rollout_percentage=20)
        assert config.version == 0
        assert config.status == StrategyStatus.ACTIVE
        assert config.rollout_percentage == 100
        assert get_active(db, topic.id).version == 0

    def test_first_version_is_zero_for_every_topic(self, db):
        first = make_topic(db)
        second = make_topic(db, title="Other")
        assert get_active(db, first.id).version == 0
        assert get_active(db, second.id).version == 0


# ---------------------------------------------------------------------------
# Version allocation
# ---------------------------------------------------------------------------

class TestCreateVersion:

    def test_versions_strictly_increase(self, db):
        topic = make_topic(db)
        versions = []
        for depth in (SearchDepth.SHALLOW, SearchDepth.DEEP, SearchDepth.STANDARD):
            config = create_version(
                db,
                topic.id,
                StrategyPayload(search_depth=depth),
                status=StrategyStatus.ACTIVE,
            )
            versions.append(config.version)
        assert versions == [1, 2, 3]
        assert [c.version for c in list_versions(db, topic.id)] == [3, 2, 1, 0]

    def test_candidate_defaults_parent_to_active(self, db):
        topic = make_topic(db)
        config = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        assert config.status == StrategyStatus.CANDIDATE
        assert config.parent_version == 0
        assert config.rollout_percentage == 20
        assert get_candidate(db, topic.id).version == config.version
        assert get_active(db, topic.id).version == 0

    def test_only_one_candidate_per_active_version(self, db):
        topic = make_topic(db)
        create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        with pytest.raises(ConflictError):
            create_version(db, topic.id, StrategyPayload(search_depth=SearchDepth.DEEP), rollout_percentage=20)

    def test_created_active_is_promoted_in_same_call(self, db):
        topic = make_topic(db)
        config = create_version(db, topic.id, StrategyPayload(parallel_execution=True), status=StrategyStatus.ACTIVE)

        assert config.status == StrategyStatus.ACTIVE
        assert get_active(db, topic.id).version == 1
        assert get_version(db, topic.id, 0).status == StrategyStatus.ARCHIVED
        assert len(_active_rows(db, topic.id)) == 1

    def test_rejects_archived_status(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            create_version(db, topic.id, default_payload(), status=StrategyStatus.ARCHIVED)

    def test_rejects_unknown_parent(self, db):
        topic = make_topic(db)
        with pytest.raises(NotFoundError):
            create_version(db, topic.id, default_payload(), parent_version=42)

    def test_unknown_topic(self, db):
        with pytest.raises(NotFoundError):
            create_version(db, uuid4(), default_payload())

    def test_payload_is_persisted_as_json(self, db):
        topic = make_topic(db)
        config = create_version(
            db,
            topic.id,
            {"domain_weights": {"reuters.com": 2.0}, "max_followups": 4},
            status=StrategyStatus.ACTIVE,
        )
        db.expire_all()
        stored = get_version(db, topic.id, config.version)
        assert stored.payload["domain_weights"] == {"reuters.com": 2.0}
        assert stored.payload["max_followups"] == 4
        assert stored.payload["model_tier"] == "standard"


# ---------------------------------------------------------------------------
# Promotion / archive / rollout
# ---------------------------------------------------------------------------

class TestPromotion:

    def test_promote_moves_pointer_and_archives_previous(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        promote(db, topic.id, candidate.version)

        db.expire_all()
        assert get_active(db, topic.id).version == 1
        assert get_version(db, topic.id, 1).rollout_percentage == 100
        assert get_version(db, topic.id, 0).status == StrategyStatus.ARCHIVED
        assert len(_active_rows(db, topic.id)) == 1
        assert get_candidate(db, topic.id) is None

    def test_promote_active_is_noop(self, db):
        topic = make_topic(db)
        config = promote(db, topic.id, 0)
        assert config.version == 0
        assert get_active(db, topic.id).version == 0

    def test_cannot_promote_archived(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)
        archive(db, topic.id, candidate.version)

        with pytest.raises(ConflictError):
            promote(db, topic.id, candidate.version)

    def test_cannot_archive_active(self, db):
        topic = make_topic(db)
        with pytest.raises(ConflictError):
            archive(db, topic.id, 0)

    def test_archive_is_idempotent(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)
        archive(db, topic.id, candidate.version)
        assert archive(db, topic.id, candidate.version).status == StrategyStatus.ARCHIVED

    def test_archiving_candidate_frees_the_slot(self, db):
        topic = make_topic(db)
        first = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)
        archive(db, topic.id, first.version)

        second = create_version(db, topic.id, StrategyPayload(search_depth=SearchDepth.DEEP), rollout_percentage=50)
        assert second.version == 2
        assert get_candidate(db, topic.id).version == 2

    def test_update_rollout_only_for_candidates(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        assert update_rollout(db, topic.id, candidate.version, 60).rollout_percentage == 60
        with pytest.raises(ConflictError):
            update_rollout(db, topic.id, 0, 50)

    def test_promote_with_retry_promotes_candidate(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        promote_with_retry(db, topic.id, candidate.version)
        db.expire_all()
        assert get_active(db, topic.id).version == candidate.version

    def test_promote_with_retry_surfaces_conflict_after_last_attempt(self, db):
        topic = make_topic(db)
        candidate = create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)
        archive(db, topic.id, candidate.version)

        with pytest.raises(ConflictError):
            promote_with_retry(db, topic.id, candidate.version)
        assert get_active(db, topic.id).version == 0


class TestLineage:

    def test_serialized_newest_first(self, db):
        topic = make_topic(db)
        create_version(db, topic.id, StrategyPayload(parallel_execution=True), rollout_percentage=20)

        history = lineage(db, topic.id)

        assert [row["version"] for row in history] == [1, 0]
        assert history[0]["status"] == StrategyStatus.CANDIDATE
        assert history[0]["parent_version"] == 0
        assert history[0]["rollout_percentage"] == 20
        assert history[0]["payload"]["parallel_execution"] is True
        assert history[1]["status"] == StrategyStatus.ACTIVE
        assert history[1]["topic_id"] == str(topic.id)

    def test_unknown_topic(self, db):
        with pytest.raises(NotFoundError):
            lineage(db, uuid4())


class TestValidation:

    @pytest.mark.parametrize("value", [-1, 101, 50.5, "20", True])
    def test_rejects_bad_rollout(self, value):
        with pytest.raises(ValidationError):
            validate_rollout(value)

    @pytest.mark.parametrize("value", [0, 1, 20, 100])
    def test_accepts_valid_rollout(self, value):
        validate_rollout(value)

    def test_create_version_rejects_bad_rollout(self, db):
        topic = make_topic(db)
        with pytest.raises(ValidationError):
            create_version(db, topic.id, default_payload(), rollout_percentage=150)

    def test_get_active_unknown_topic(self, db):
        with pytest.raises(NotFoundError):
            get_active(db, uuid4())

    def test_model_for_tier(self, settings):
        assert model_for_tier(StrategyPayload(model_tier=ModelTier.PREMIUM)) == settings.MODEL_PREMIUM
        assert model_for_tier(StrategyPayload()) == settings.MODEL_STANDARD

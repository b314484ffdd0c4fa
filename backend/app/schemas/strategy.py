# backend/app/schemas/strategy.py
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOOL_NAME_LEN = 64
MAX_TITLE_LEN = 255
MAX_QUERY_LEN = 4000
MAX_ERROR_MESSAGE_LEN = 500

# Name of the result-evaluation tool the catastrophic rule drops
EVALUATION_TOOL = "evaluate"
DEFAULT_TOOLS = ("evaluate", "extract", "linkup")


class SearchStrategy(str, Enum):
    WEB_FIRST = "web-first"
    SENSO_FIRST = "senso-first"
    BALANCED = "balanced"


class ModelTier(str, Enum):
    STANDARD = "standard"  # cheaper model
    PREMIUM = "premium"    # higher-quality model


class SearchDepth(str, Enum):
    SHALLOW = "shallow"
    STANDARD = "standard"
    DEEP = "deep"


class TimeWindow(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


# Ordered ladders used for "one step up, capped" mutations
MODEL_TIER_LADDER = (ModelTier.STANDARD, ModelTier.PREMIUM)
SEARCH_DEPTH_LADDER = (SearchDepth.SHALLOW, SearchDepth.STANDARD, SearchDepth.DEEP)
TIME_WINDOW_LADDER = (TimeWindow.DAY, TimeWindow.WEEK, TimeWindow.MONTH, TimeWindow.ALL)


class StrategyPayload(BaseModel):
    """
    Configuration that governs one agent run.

    Instances are frozen; an evolution re-validates an updated copy
    (so normalisation re-runs) and the store persists it as a new version.
    """
    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    enabled_tools: tuple[str, ...] = DEFAULT_TOOLS
    search_strategy: SearchStrategy = SearchStrategy.WEB_FIRST
    model_tier: ModelTier = ModelTier.STANDARD
    search_depth: SearchDepth = SearchDepth.STANDARD
    time_window: TimeWindow = TimeWindow.WEEK
    parallel_execution: bool = False
    skip_evaluation: bool = False
    max_followups: int | None = Field(default=None, ge=0)
    domain_weights: dict[str, float] = Field(default_factory=dict)

    @field_validator("enabled_tools", mode="before")
    @classmethod
    def _normalize_tools(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            raise ValueError("enabled_tools must be a list of tool names")
        tools = []
        for tool in v:
            if not isinstance(tool, str) or not tool.strip():
                raise ValueError("enabled_tools entries must be non-empty strings")
            if len(tool) > MAX_TOOL_NAME_LEN:
                raise ValueError(f"tool name must be at most {MAX_TOOL_NAME_LEN} characters")
            tools.append(tool.strip())
        # Sorted set semantics keep diffs and JSON stable
        return tuple(sorted(set(tools)))

    @field_validator("domain_weights")
    @classmethod
    def _validate_weights(cls, v: dict[str, float]) -> dict[str, float]:
        for domain, weight in v.items():
            if not domain.strip():
                raise ValueError("domain_weights keys must be non-empty")
            if weight < 0:
                raise ValueError(f"domain weight for {domain!r} must be non-negative")
        return v

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class MetricsSnapshot(BaseModel):
    """Outcome metrics over a window of terminal episodes."""
    model_config = ConfigDict(frozen=True)

    topic_id: UUID
    version: int | None = None
    window_size: int
    episode_count: int = 0
    avg_save_rate: float = 0.0
    avg_followup_count: float = 0.0
    failure_rate: float = 0.0
    total_sources_returned: int = 0
    total_sources_saved: int = 0
    newest_episode_id: UUID | None = None


class ConfigChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    old_value: Any = None
    new_value: Any = None


class EpisodeAnalysis(BaseModel):
    episode_id: UUID
    topic_id: UUID
    strategy_version: int
    sources_returned: int
    sources_saved: int
    save_rate: float
    followup_count: int
    tool_usage_count: int
    had_error: bool
    recommendation: Literal["keep", "evolve", "rollback"]
    reason: str


class EpisodeCreate(BaseModel):
    topic_id: UUID
    strategy_version: int = Field(ge=0)
    query: str
    resource_id: str | None = None
    id: UUID | None = None

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be empty")
        if len(v) > MAX_QUERY_LEN:
            raise ValueError(
                f"query is too long; maximum length is {MAX_QUERY_LEN} characters"
            )
        return v


class TopicOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None = None
    owner_id: str | None = None
    active_version: int | None = None
    evaluated_episode_count: int = 0
    last_evaluated_at: datetime | None = None
    created_at: datetime


class StrategyConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    topic_id: UUID
    version: int
    parent_version: int | None = None
    status: str
    rollout_percentage: int
    payload: dict[str, Any]
    created_at: datetime


class EpisodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    topic_id: UUID
    strategy_version: int
    resource_id: str | None = None
    query: str
    status: str
    sources_returned: list[Any]
    sources_saved: list[Any]
    followup_count: int
    tool_usage: dict[str, Any] | list[Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


class EvolutionLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    topic_id: UUID
    from_version: int
    to_version: int
    reason: str
    changes: list[ConfigChange]
    metrics: dict[str, Any] | None = None
    created_at: datetime

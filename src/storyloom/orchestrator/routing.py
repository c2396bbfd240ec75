"""Capability-based worker ranking.

Ranks workers for a story from its capability tags. Each worker scores
``primary_weight`` per tag in its primary set plus ``secondary_weight``
per tag in its secondary set. The fallback worker gets a small bonus when
it matches nothing, so a story whose tags match no one still has a
deterministic default assignee, while any worker with a genuine match
outranks it. Ties are broken by each worker's fixed ``tie_break_rank``.

Tags are compared against the closed :class:`CapabilityTag` taxonomy;
anything outside it is reported back as unrecognised instead of silently
scoring zero.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import Enum

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import RoutingConfig
from storyloom.database.models.worker import Worker
from storyloom.database.queries.worker import list_workers, upsert_worker

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class CapabilityTag(str, Enum):
    """Closed set of capability tags a story may carry."""

    FRONTEND = "frontend"
    BACKEND = "backend"
    API = "api"
    DATABASE = "database"
    SECURITY = "security"
    UI_DESIGN = "ui-design"
    INFRASTRUCTURE = "infrastructure"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    DEVOPS = "devops"


VALID_TAGS: frozenset[str] = frozenset(tag.value for tag in CapabilityTag)


def normalise_tags(tags: Iterable[str]) -> list[str]:
    """Lower-case, strip and de-duplicate tags, keeping first-seen order."""
    result: list[str] = []
    for tag in tags:
        cleaned = tag.strip().lower()
        if cleaned and cleaned not in result:
            result.append(cleaned)
    return result


def split_tags(tags: Iterable[str]) -> tuple[list[str], list[str]]:
    """Partition tags into recognised and unrecognised lists.

    Args:
        tags: Raw tags.

    Returns:
        ``(recognised, unrecognised)``, both normalised and in input order.
    """
    recognised: list[str] = []
    unrecognised: list[str] = []
    for tag in normalise_tags(tags):
        (recognised if tag in VALID_TAGS else unrecognised).append(tag)
    return recognised, unrecognised


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class WorkerProfile(BaseModel):
    """Capabilities of one worker, as used for a ranking computation.

    Attributes:
        id: Worker slug.
        name: Display name.
        primary_tags: Tags the worker is strongest at.
        secondary_tags: Tags the worker can take on.
        tie_break_rank: Position in the tie-break order (lower wins).
        is_fallback: Whether this is the generalist default assignee.
    """

    model_config = {"frozen": True}

    id: str
    name: str
    primary_tags: frozenset[str] = Field(default_factory=frozenset)
    secondary_tags: frozenset[str] = Field(default_factory=frozenset)
    tie_break_rank: int = 100
    is_fallback: bool = False

    @classmethod
    def from_model(cls, worker: Worker) -> WorkerProfile:
        """Build a profile from a ``workers`` row."""
        return cls(
            id=worker.id,
            name=worker.name,
            primary_tags=frozenset(normalise_tags(worker.primary_tags or [])),
            secondary_tags=frozenset(normalise_tags(worker.secondary_tags or [])),
            tie_break_rank=worker.tie_break_rank,
            is_fallback=worker.is_fallback,
        )


class WorkerScore(BaseModel):
    """One worker's score and the tags that produced it.

    Attributes:
        worker_id: Worker slug.
        score: Weighted match score.
        primary_matches: Story tags found in the worker's primary set.
        secondary_matches: Story tags found in the worker's secondary set.
        fallback_bonus: Whether the fallback bonus was applied.
    """

    worker_id: str
    score: float
    primary_matches: list[str] = Field(default_factory=list)
    secondary_matches: list[str] = Field(default_factory=list)
    fallback_bonus: bool = False


class RecommendationReason(str, Enum):
    """Why a routing result recommends who it does."""

    MATCHED = "matched"
    NO_MATCH = "no_match"
    NO_TAGS = "no_tags"


class RoutingResult(BaseModel):
    """Ranking plus recommendation for a set of tags.

    Attributes:
        tags: Recognised tags that were ranked.
        unrecognized_tags: Tags outside the taxonomy.
        rankings: Every worker, best first.
        recommended: Recommended worker id, or None when there were no tags.
        reason: Why ``recommended`` was chosen.
    """

    tags: list[str]
    unrecognized_tags: list[str] = Field(default_factory=list)
    rankings: list[WorkerScore] = Field(default_factory=list)
    recommended: str | None = None
    reason: RecommendationReason


# ---------------------------------------------------------------------------
# Default worker directory
# ---------------------------------------------------------------------------

DEFAULT_WORKERS: tuple[WorkerProfile, ...] = (
    WorkerProfile(
        id="lead-engineer",
        name="Lead Engineer",
        primary_tags=frozenset({"frontend", "backend", "api", "database"}),
        secondary_tags=frozenset({"infrastructure", "testing", "devops"}),
        tie_break_rank=1,
        is_fallback=True,
    ),
    WorkerProfile(
        id="solution-architect",
        name="Solution Architect",
        primary_tags=frozenset({"database", "infrastructure", "documentation"}),
        secondary_tags=frozenset({"backend", "api", "security"}),
        tie_break_rank=2,
    ),
    WorkerProfile(
        id="security-reviewer",
        name="Security Reviewer",
        primary_tags=frozenset({"security"}),
        secondary_tags=frozenset({"backend", "api", "database"}),
        tie_break_rank=3,
    ),
    WorkerProfile(
        id="designer",
        name="Designer",
        primary_tags=frozenset({"ui-design", "frontend"}),
        secondary_tags=frozenset({"documentation", "testing"}),
        tie_break_rank=4,
    ),
    WorkerProfile(
        id="quality-inspector",
        name="Quality Inspector",
        primary_tags=frozenset({"testing"}),
        secondary_tags=frozenset({"documentation", "security", "frontend", "backend"}),
        tie_break_rank=5,
    ),
    WorkerProfile(
        id="product-manager",
        name="Product Manager",
        primary_tags=frozenset({"documentation"}),
        secondary_tags=frozenset({"ui-design", "testing"}),
        tie_break_rank=6,
    ),
)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def fallback_worker_id(
    workers: Sequence[WorkerProfile],
    config: RoutingConfig,
) -> str | None:
    """Return the id of the fallback worker among ``workers``.

    A worker flagged ``is_fallback`` wins; otherwise the configured
    ``fallback_worker`` is used if it is present.
    """
    for worker in sorted(workers, key=lambda w: (w.tie_break_rank, w.id)):
        if worker.is_fallback:
            return worker.id
    if any(w.id == config.fallback_worker for w in workers):
        return config.fallback_worker
    return None


def rank_workers(
    tags: Iterable[str],
    workers: Sequence[WorkerProfile],
    config: RoutingConfig | None = None,
) -> list[WorkerScore]:
    """Score and order workers for a tag set.

    Pure and deterministic: the same input always produces the same
    order, ties included. Tags are normalised but not filtered, so tags
    outside the taxonomy simply match nothing here.

    Args:
        tags: Story capability tags.
        workers: Candidate workers.
        config: Weights and fallback settings (defaults if omitted).

    Returns:
        Scores for every worker, by score descending then tie-break rank.
    """
    config = config or RoutingConfig()
    tag_list = normalise_tags(tags)
    fallback_id = fallback_worker_id(workers, config)

    ranked: list[tuple[WorkerScore, int]] = []
    for worker in workers:
        primary = [t for t in tag_list if t in worker.primary_tags]
        secondary = [t for t in tag_list if t in worker.secondary_tags]
        score = (
            config.primary_weight * len(primary)
            + config.secondary_weight * len(secondary)
        )
        bonus = score == 0 and worker.id == fallback_id
        if bonus:
            score += config.fallback_bonus
        ranked.append(
            (
                WorkerScore(
                    worker_id=worker.id,
                    score=score,
                    primary_matches=primary,
                    secondary_matches=secondary,
                    fallback_bonus=bonus,
                ),
                worker.tie_break_rank,
            )
        )

    ranked.sort(key=lambda item: (-item[0].score, item[1], item[0].worker_id))
    return [score for score, _ in ranked]


def route_story(
    tags: Iterable[str],
    workers: Sequence[WorkerProfile],
    config: RoutingConfig | None = None,
) -> RoutingResult:
    """Rank workers for a story and pick a recommendation.

    An empty tag set yields no recommendation (``NO_TAGS``) and no
    ranking. Tags that match nobody yield the fallback worker
    (``NO_MATCH``). Unrecognised tags are reported in every case.

    Args:
        tags: Story capability tags.
        workers: Candidate workers.
        config: Weights and fallback settings (defaults if omitted).

    Returns:
        RoutingResult with rankings, recommendation and reason.
    """
    config = config or RoutingConfig()
    recognised, unrecognised = split_tags(tags)

    if unrecognised:
        logger.warning("unrecognized_tags", tags=unrecognised)

    if not recognised:
        if unrecognised:
            return RoutingResult(
                tags=[],
                unrecognized_tags=unrecognised,
                rankings=rank_workers([], workers, config),
                recommended=fallback_worker_id(workers, config),
                reason=RecommendationReason.NO_MATCH,
            )
        return RoutingResult(
            tags=[],
            unrecognized_tags=[],
            recommended=None,
            reason=RecommendationReason.NO_TAGS,
        )

    rankings = rank_workers(recognised, workers, config)
    top = rankings[0] if rankings else None
    matched = top is not None and (top.primary_matches or top.secondary_matches)

    return RoutingResult(
        tags=recognised,
        unrecognized_tags=unrecognised,
        rankings=rankings,
        recommended=top.worker_id if top is not None else None,
        reason=RecommendationReason.MATCHED if matched else RecommendationReason.NO_MATCH,
    )


def explain(result: RoutingResult) -> list[str]:
    """Render a routing result as human-readable lines."""
    if result.reason == RecommendationReason.NO_TAGS:
        return ["No capability tags given; no recommendation."]

    lines: list[str] = []
    if result.unrecognized_tags:
        lines.append(f"Unrecognized tags ignored: {', '.join(result.unrecognized_tags)}")
    if result.reason == RecommendationReason.NO_MATCH:
        lines.append(
            f"No worker matches these tags; defaulting to {result.recommended}."
        )
    for score in result.rankings:
        parts = []
        if score.primary_matches:
            parts.append(f"primary: {', '.join(score.primary_matches)}")
        if score.secondary_matches:
            parts.append(f"secondary: {', '.join(score.secondary_matches)}")
        if score.fallback_bonus:
            parts.append("fallback bonus")
        detail = "; ".join(parts) if parts else "no matches"
        lines.append(f"{score.worker_id}: {score.score:g} ({detail})")
    return lines


# ---------------------------------------------------------------------------
# Directory access
# ---------------------------------------------------------------------------


async def load_worker_profiles(session: AsyncSession) -> list[WorkerProfile]:
    """Load the worker directory, falling back to DEFAULT_WORKERS if empty."""
    workers = await list_workers(session)
    if not workers:
        return list(DEFAULT_WORKERS)
    return [WorkerProfile.from_model(worker) for worker in workers]


async def seed_default_workers(session: AsyncSession) -> list[str]:
    """Persist DEFAULT_WORKERS, replacing rows with the same ids.

    Returns:
        Ids of the workers written.
    """
    seeded: list[str] = []
    for profile in DEFAULT_WORKERS:
        await upsert_worker(
            session,
            worker_id=profile.id,
            name=profile.name,
            primary_tags=profile.primary_tags,
            secondary_tags=profile.secondary_tags,
            tie_break_rank=profile.tie_break_rank,
            is_fallback=profile.is_fallback,
        )
        seeded.append(profile.id)
    logger.info("workers_seeded", count=len(seeded))
    return seeded

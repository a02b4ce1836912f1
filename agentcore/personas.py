import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from .db import Database, utc_now
from .errors import NotFound, ValidationError
from .registry import PersonaLibrary
from .schemas import Persona

logger = logging.getLogger("uvicorn.error")

_TOKEN_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "her", "was", "one",
    "our", "out", "has", "have", "with", "this", "that", "from", "they", "will", "your", "what",
    "when", "who", "how", "into", "about", "than", "then", "them", "these", "those", "some",
    "please", "need", "want", "help", "me",
}
MIN_TOKEN_LEN = 3


def tokenize(text: str) -> Set[str]:
    return {
        token
        for token in _TOKEN_RE.findall((text or "").lower())
        if len(token) >= MIN_TOKEN_LEN and token not in STOPWORDS
    }


def _walk_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield str(key)
            yield from _walk_strings(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from _walk_strings(item)


def persona_vocabulary(persona: Persona) -> Set[str]:
    words = tokenize(persona.name) | tokenize(persona.description)
    for text in _walk_strings(persona.traits):
        words |= tokenize(text)
    return words


def _validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError(f"limit must be a positive integer, got {limit!r}")
    return limit


def _validate_rating(rating: Any) -> float:
    if isinstance(rating, bool) or not isinstance(rating, (int, float)):
        raise ValidationError(f"rating must be a number in [0, 1], got {rating!r}")
    value = float(rating)
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise ValidationError(f"rating must be in [0, 1], got {rating!r}")
    return value


SCORE_WEIGHTS = {"success_rate": 0.35, "satisfaction": 0.30, "adaptability": 0.20, "latency": 0.15}
# Latency at or above this counts as zero on the latency axis.
LATENCY_CEILING_MS = 5000.0


def overall_score(score: Dict[str, Any]) -> float:
    """Weighted blend of success rate, rating, adaptability and latency, rounded to 2 places."""
    total = score["success_count"] + score["failure_count"]
    # A persona with no recorded runs has no latency to reward.
    latency = max(0.0, 1.0 - score["average_latency_ms"] / LATENCY_CEILING_MS) if total else 0.0
    value = (
        score["success_rate"] * SCORE_WEIGHTS["success_rate"]
        + score["average_rating"] * SCORE_WEIGHTS["satisfaction"]
        + score["adaptability_score"] * SCORE_WEIGHTS["adaptability"]
        + latency * SCORE_WEIGHTS["latency"]
    )
    return round(value, 2)


def _score_from_row(persona_id: str, row: Any) -> Dict[str, Any]:
    if row is None:
        return {
            "persona_id": persona_id,
            "usage_count": 0,
            "feedback_count": 0,
            "average_rating": 0.0,
            "success_count": 0,
            "failure_count": 0,
            "success_rate": 0.0,
            "average_latency_ms": 0.0,
            "adaptability_score": 0.0,
            "overall_score": 0.0,
            "last_used_at": None,
        }
    score = {
        "persona_id": persona_id,
        "usage_count": int(row["usage_count"] or 0),
        "feedback_count": int(row["feedback_count"] or 0),
        "average_rating": float(row["average_rating"] or 0.0),
        "success_count": int(row["success_count"] or 0),
        "failure_count": int(row["failure_count"] or 0),
        "average_latency_ms": float(row["average_latency_ms"] or 0.0),
        "adaptability_score": float(row["adaptability_score"] or 0.0),
        "last_used_at": row["last_used_at"],
    }
    runs = score["success_count"] + score["failure_count"]
    score["success_rate"] = score["success_count"] / runs if runs else 0.0
    score["overall_score"] = overall_score(score)
    return score


class PersonaScorer:
    """Usage and feedback statistics per persona, plus context-based recommendation.

    Recommendation is lexical: the share of the context's significant words
    that also occur in a persona's name, description or traits. The highest
    share at or above ``threshold`` wins and ties go to the lowest persona id.
    """

    def __init__(self, db: Database, library: PersonaLibrary, threshold: float = 0.1):
        self.db = db
        self.library = library
        self.threshold = threshold

    async def recommend(self, context: str) -> Optional[Dict[str, Any]]:
        context_words = tokenize(context)
        if not context_words:
            return None
        best: Optional[Dict[str, Any]] = None
        # list_personas is ordered by id, so a strict comparison keeps the lowest id on ties.
        for persona in await self.library.list_personas():
            matched = context_words & persona_vocabulary(persona)
            score = len(matched) / len(context_words)
            if score < self.threshold or not matched:
                continue
            if best is None or score > best["score"]:
                best = {
                    "persona": persona,
                    "score": score,
                    "matchReason": f"Matched terms: {', '.join(sorted(matched))}",
                }
        return best

    async def record_usage(self, persona_id: str) -> None:
        if await self.library.get_persona(persona_id) is None:
            logger.warning("record_usage: persona %s no longer exists; ignoring", persona_id)
            return
        now = utc_now()
        await self.db.execute(
            "INSERT INTO persona_scores(persona_id, usage_count, last_used_at, updated_at) VALUES (?,1,?,?) "
            "ON CONFLICT(persona_id) DO UPDATE SET usage_count=usage_count+1, "
            "last_used_at=excluded.last_used_at, updated_at=excluded.updated_at",
            (persona_id, now, now),
        )

    async def record_feedback(self, persona_id: str, rating: Any, comment: Optional[str] = None) -> Dict[str, Any]:
        value = _validate_rating(rating)
        if await self.library.get_persona(persona_id) is None:
            raise NotFound(f"Persona not found: {persona_id}")
        now = utc_now()
        async with self.db.transaction() as db:
            cursor = await db.execute(
                "SELECT feedback_count, average_rating FROM persona_scores WHERE persona_id=?",
                (persona_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            count = int(row["feedback_count"] or 0) if row else 0
            average = float(row["average_rating"] or 0.0) if row else 0.0
            new_average = (average * count + value) / (count + 1)
            await db.execute(
                "INSERT INTO persona_scores(persona_id, feedback_count, average_rating, updated_at) VALUES (?,?,?,?) "
                "ON CONFLICT(persona_id) DO UPDATE SET feedback_count=excluded.feedback_count, "
                "average_rating=excluded.average_rating, updated_at=excluded.updated_at",
                (persona_id, count + 1, new_average, now),
            )
            await db.execute(
                "INSERT INTO persona_feedback(persona_id, rating, comment, created_at) VALUES (?,?,?,?)",
                (persona_id, value, comment, now),
            )
        return await self.get_score(persona_id)

    async def record_outcome(
        self, persona_id: str, success: bool, latency_ms: float, adaptability: Optional[float] = None
    ) -> None:
        """Fold a run outcome into the persona's success counters and latency average.

        ``adaptability`` replaces the stored adaptability score when given; it is
        clamped to [0, 1].
        """
        if await self.library.get_persona(persona_id) is None:
            logger.warning("record_outcome: persona %s no longer exists; ignoring", persona_id)
            return
        now = utc_now()
        success_inc = 1 if success else 0
        failure_inc = 0 if success else 1
        latency = max(0.0, float(latency_ms))
        adapt = None if adaptability is None else min(1.0, max(0.0, float(adaptability)))
        await self.db.execute(
            "INSERT INTO persona_scores(persona_id, success_count, failure_count, average_latency_ms, "
            "adaptability_score, updated_at) VALUES (?,?,?,?,COALESCE(?, 0),?) "
            "ON CONFLICT(persona_id) DO UPDATE SET "
            "average_latency_ms=(average_latency_ms*(success_count+failure_count)+excluded.average_latency_ms)"
            "/(success_count+failure_count+1), "
            "success_count=success_count+excluded.success_count, "
            "failure_count=failure_count+excluded.failure_count, "
            "adaptability_score=COALESCE(?, adaptability_score), updated_at=excluded.updated_at",
            (persona_id, success_inc, failure_inc, latency, adapt, now, adapt),
        )

    async def get_score(self, persona_id: str) -> Dict[str, Any]:
        row = await self.db.fetchone("SELECT * FROM persona_scores WHERE persona_id=?", (persona_id,))
        return _score_from_row(persona_id, row)

    async def top_performing(self, limit: Any = 5) -> List[Dict[str, Any]]:
        return await self._ranked("average_rating", _validate_limit(limit))

    async def most_used(self, limit: Any = 5) -> List[Dict[str, Any]]:
        return await self._ranked("usage_count", _validate_limit(limit))

    async def _ranked(self, metric: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            f"SELECT p.id AS id, s.* FROM personas p LEFT JOIN persona_scores s ON s.persona_id = p.id "
            f"ORDER BY COALESCE(s.{metric}, 0) DESC, p.id ASC LIMIT ?",
            (limit,),
        )
        personas = {p.id: p for p in await self.library.list_personas()}
        ranked: List[Dict[str, Any]] = []
        for row in rows:
            persona = personas.get(row["id"])
            if persona is None:
                continue
            score_row = row if row["persona_id"] is not None else None
            ranked.append({"persona": persona, "score": _score_from_row(row["id"], score_row)})
        return ranked

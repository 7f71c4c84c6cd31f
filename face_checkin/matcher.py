"""
Matcher - the check-in decision engine

Two-tier strategy:
1. Indexed search of the probe in the default provider group.
2. Linear pairwise comparison against every enrolled identity, entered only
   when the indexed search could not be executed at all.

Both tiers apply the same acceptance threshold, and ties on confidence are
broken by enrollment order: the earliest-enrolled identity wins.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from face_checkin.config import (
    ACCEPTANCE_THRESHOLD,
    DEFAULT_GROUP_TOKEN,
    FALLBACK_CONCURRENCY,
    PROVIDER_TIMEOUT_SECONDS,
)
from face_checkin.exceptions import CompareFailed, ProviderUnavailable, SearchUnavailable
from face_checkin.providers.base import RecognitionProvider, call_provider
from face_checkin.registry import IdentityRegistry
from face_checkin.schemas import (
    Identity,
    MatchPath,
    SearchCandidate,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchDecision:
    outcome: VerificationOutcome
    identity: Optional[Identity] = None
    confidence: float = 0.0
    path: MatchPath = MatchPath.NONE
    detail: str = ""
    # matched token held by no registered identity
    unresolved: bool = False


def pick_best(
    candidates: Sequence[SearchCandidate],
    enrollment_rank: Dict[str, int]
) -> SearchCandidate:
    """
    Highest-confidence candidate; equal confidences go to the earliest
    enrolled token. Tokens missing from enrollment_rank lose every tie.
    """
    unranked = len(enrollment_rank)
    return min(
        candidates,
        key=lambda c: (-c.confidence, enrollment_rank.get(c.reference_token, unranked))
    )


class Matcher:
    """
    Turns a probe token into exactly one MatchDecision.

    Args:
        provider: recognition provider used for search and compare
        registry: enrolled identities
        default_group: group searched on the indexed path
        threshold: minimum accepted confidence (0-100)
        concurrency: simultaneous compare calls on the linear path
        timeout: deadline for each provider call, in seconds
    """

    def __init__(
        self,
        provider: RecognitionProvider,
        registry: IdentityRegistry,
        default_group: str = DEFAULT_GROUP_TOKEN,
        threshold: float = ACCEPTANCE_THRESHOLD,
        concurrency: int = FALLBACK_CONCURRENCY,
        timeout: float = PROVIDER_TIMEOUT_SECONDS
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.provider = provider
        self.registry = registry
        self.default_group = default_group
        self.threshold = threshold
        self.concurrency = concurrency
        self.timeout = timeout

    async def verify(self, probe_token: str) -> MatchDecision:
        start_time = time.time()

        try:
            candidates = await call_provider(
                self.provider.search_in_group,
                probe_token,
                self.default_group,
                timeout=self.timeout,
                error=SearchUnavailable
            )
        except ProviderUnavailable as e:
            logger.warning(f"Indexed search unavailable, falling back to linear comparison: {e}")
            decision = await self.verify_linear(probe_token)
        else:
            decision = await self.decide_indexed(candidates)

        processing_time = (time.time() - start_time) * 1000
        matched = decision.identity.identity_id if decision.identity else "-"
        logger.info(
            f"Match decision {decision.outcome.value} via {decision.path.value} "
            f"(identity: {matched}, confidence: {decision.confidence:.1f}) in {processing_time:.1f}ms"
        )
        return decision

    async def decide_indexed(self, candidates: Sequence[SearchCandidate]) -> MatchDecision:
        """Decide from the ranked results of a successful group search."""
        if not candidates:
            return MatchDecision(VerificationOutcome.NOT_RECOGNIZED, path=MatchPath.INDEXED)

        top_confidence = max(c.confidence for c in candidates)
        tied = [c for c in candidates if c.confidence == top_confidence]
        if len(tied) > 1:
            identities = await self.registry.list()
            rank = {identity.reference_token: i for i, identity in enumerate(identities)}
            best = pick_best(tied, rank)
        else:
            best = tied[0]

        if best.confidence < self.threshold:
            return MatchDecision(
                VerificationOutcome.LOW_CONFIDENCE,
                confidence=best.confidence,
                path=MatchPath.INDEXED
            )

        identity = await self.registry.find_by_token(best.reference_token)
        if identity is None:
            logger.error(
                f"Provider group '{self.default_group}' returned token {best.reference_token} "
                f"that no registered identity holds"
            )
            return MatchDecision(
                VerificationOutcome.PROVIDER_ERROR,
                confidence=best.confidence,
                path=MatchPath.INDEXED,
                detail="Employee data not found. Please contact administrator.",
                unresolved=True
            )

        return MatchDecision(
            VerificationOutcome.SUCCESS,
            identity=identity,
            confidence=best.confidence,
            path=MatchPath.INDEXED
        )

    async def verify_linear(self, probe_token: str) -> MatchDecision:
        """Compare the probe against every enrolled identity and keep the best."""
        identities = await self.registry.list()
        if not identities:
            return MatchDecision(VerificationOutcome.NOT_RECOGNIZED, path=MatchPath.LINEAR)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def score(identity: Identity) -> Optional[float]:
            async with semaphore:
                try:
                    return await call_provider(
                        self.provider.compare,
                        probe_token,
                        identity.reference_token,
                        timeout=self.timeout,
                        error=CompareFailed
                    )
                except ProviderUnavailable as e:
                    logger.warning(f"Comparison with identity {identity.identity_id} failed, skipping: {e}")
                    return None

        scores: List[Optional[float]] = await asyncio.gather(*(score(i) for i in identities))

        # gather keeps input order, so strict ">" leaves ties with the earliest enrollment
        best_identity = None
        best_confidence = 0.0
        for identity, confidence in zip(identities, scores):
            if confidence is None:
                continue
            if best_identity is None or confidence > best_confidence:
                best_identity = identity
                best_confidence = confidence

        failed = sum(1 for s in scores if s is None)
        if failed:
            logger.warning(f"Linear scan: {failed}/{len(identities)} comparisons failed")

        if best_identity is None or best_confidence < self.threshold:
            return MatchDecision(
                VerificationOutcome.NOT_RECOGNIZED,
                confidence=best_confidence,
                path=MatchPath.LINEAR
            )

        return MatchDecision(
            VerificationOutcome.SUCCESS,
            identity=best_identity,
            confidence=best_confidence,
            path=MatchPath.LINEAR
        )

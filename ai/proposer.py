"""
Strategy proposer service.

Single entry point for model-drafted candidate strategies. The proposer has
no authority: everything it returns is re-scored, re-selected and validated
by the decision pipeline. Any failure surfaces as ProposerError so the
pipeline can fall back to its deterministic strategy.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from core.exceptions import ProposerError
from core.models import Strategy

from .model_client import ModelClient
from .schemas import ProposalContext, parse_strategies

log = logging.getLogger(__name__)


class StrategyProposer(ABC):
    """Drafts candidate strategies from the analysis and portfolio context."""

    @abstractmethod
    def propose(self, context: ProposalContext) -> List[Strategy]:
        """
        Raises:
            ProposerError: call failed or output was unusable
        """


class ModelStrategyProposer(StrategyProposer):
    """
    Proposer backed by a ModelClient (OpenAI, Anthropic, mock).

    Output is parsed leniently: prose and markdown fences are tolerated,
    unknown shapes dropped, numerics clamped. At most max_strategies are kept.
    """

    def __init__(self, model_client: ModelClient, timeout_s: float = 5.0, max_strategies: Optional[int] = None):
        self.model_client = model_client
        self.timeout_s = timeout_s
        self.max_strategies = max_strategies

    @property
    def model(self) -> str:
        return getattr(self.model_client, "model", type(self.model_client).__name__)

    def propose(self, context: ProposalContext) -> List[Strategy]:
        start = time.perf_counter()
        try:
            raw = self.model_client.call(context.to_request(), timeout=self.timeout_s)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            log.error(f"Strategy proposer call failed after {elapsed:.1f}ms: {e}")
            raise ProposerError(f"model call failed: {str(e)[:100]}", e) from e

        strategies = parse_strategies(raw)
        limit = self.max_strategies or context.max_strategies
        strategies = strategies[:limit]

        latency = (time.perf_counter() - start) * 1000
        log.info(f"Strategy proposer returned {len(strategies)} strategies in {latency:.1f}ms (model={self.model})")
        return strategies


class StaticStrategyProposer(StrategyProposer):
    """Returns a fixed list of strategies; used for replay and tests."""

    def __init__(self, strategies: List[Strategy]):
        self.strategies = list(strategies)

    @property
    def model(self) -> str:
        return "static"

    def propose(self, context: ProposalContext) -> List[Strategy]:
        return self.strategies[:context.max_strategies]

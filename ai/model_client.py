"""
Model client abstraction for AI providers (OpenAI, Anthropic, mock).

Clients return the raw model text; parsing and validation of the strategy
array happens in ai.schemas so every provider is held to the same contract.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Union
from abc import ABC, abstractmethod

log = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a DeFi yield strategist for an autonomous capital allocation agent.

Your role:
- Review the market analysis, portfolio and scored opportunities
- Propose between {min_strategies} and {max_strategies} candidate strategies
- Favor capital preservation: lower risk scores beat marginally higher APY
- Respect all limits (you cannot override them): never exceed available funds
  or the per-opportunity cap

Response format (a JSON array, nothing else):
[
  {{
    "protocol": "aave",
    "chain": "ethereum",
    "action": "deposit|withdraw|rebalance",
    "amount": 1000,
    "expected_apy": 4.5,
    "risk_score": 3,
    "rationale": "brief reasoning",
    "confidence": 0.0-1.0
  }}
]
"""


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    @abstractmethod
    def call(self, request: Dict[str, Any], timeout: float) -> str:
        """
        Call the model with a proposal request.

        Args:
            request: Request dict from ProposalContext.to_request()
            timeout: Max time in seconds

        Returns:
            Raw model text expected to contain a JSON array of strategies

        Raises:
            Exception: On API errors
        """


def build_system_prompt(request: Dict[str, Any]) -> str:
    return SYSTEM_PROMPT.format(
        min_strategies=request.get("min_strategies", 3),
        max_strategies=request.get("max_strategies", 5),
    )


def format_request(request: Dict[str, Any]) -> str:
    """Format request dict as structured prompt."""
    portfolio = request.get("portfolio", {})
    opportunities = request.get("opportunities", [])

    parts = [
        "=== Analysis ===",
        request.get("analysis", "(none)"),
        "",
        "=== Portfolio ===",
        f"Available funds: ${portfolio.get('available_funds', 0):,.2f}",
        f"Max per opportunity: ${portfolio.get('max_investment_per_opp', 0):,.2f}",
        f"Risk tolerance: {portfolio.get('risk_tolerance', 0):g}/10",
    ]

    positions = portfolio.get("positions") or []
    if positions:
        parts.append("Current positions:")
        for p in positions[:10]:
            parts.append(
                f"  {p.get('protocol')} on {p.get('chain')}: ${p.get('amount', 0):,.2f} "
                f"@ {p.get('expected_apy', 0):.2f}%"
            )

    parts.extend(["", "=== Opportunities ==="])
    for o in opportunities[:20]:
        parts.append(
            f"{o.get('protocol')} | {o.get('chain')} | APY {o.get('apy', 0):.2f}% | "
            f"TVL ${o.get('tvl', 0):,.0f} | Risk {o.get('risk_score', 'n/a')}"
        )

    lessons = request.get("lessons") or {}
    recommendations = lessons.get("recommendations") or []
    if recommendations:
        parts.extend(["", "=== Lessons ==="])
        parts.extend(f"- {r.get('message')}" if isinstance(r, dict) else f"- {r}" for r in recommendations)

    parts.append("")
    parts.append("Provide your strategies as a JSON array.")

    return "\n".join(parts)


class OpenAIClient(ModelClient):
    """OpenAI chat completions client."""

    def __init__(self, api_key: str, model: str = "gpt-4o", base_url: Optional[str] = None):
        # Lazy import to avoid requiring openai unless used
        from openai import OpenAI

        self.api_key = api_key
        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"
        self.client = OpenAI(api_key=api_key, base_url=self.base_url, timeout=5.0)

    def call(self, request: Dict[str, Any], timeout: float) -> str:
        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(request)},
                    {"role": "user", "content": format_request(request)},
                ],
                temperature=0.3,
                timeout=timeout,
            )
            elapsed = time.perf_counter() - start
            log.info(f"OpenAI call completed in {elapsed*1000:.1f}ms")
            return response.choices[0].message.content or ""
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"OpenAI call failed after {elapsed*1000:.1f}ms: {e}")
            raise


class AnthropicClient(ModelClient):
    """Anthropic messages API client."""

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022"):
        from anthropic import Anthropic

        self.api_key = api_key
        self.model = model
        self.client = Anthropic(api_key=api_key, timeout=5.0)

    def call(self, request: Dict[str, Any], timeout: float) -> str:
        start = time.perf_counter()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=2048,
                temperature=0.3,
                system=build_system_prompt(request),
                messages=[{"role": "user", "content": format_request(request)}],
                timeout=timeout,
            )
            elapsed = time.perf_counter() - start
            log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")
            return "".join(block.text for block in response.content if getattr(block, "text", None))
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise


def _risk_or_default(opportunity: Dict[str, Any]) -> float:
    risk = opportunity.get("risk_score")
    return 5 if risk is None else risk


class MockClient(ModelClient):
    """
    Mock client for testing and DRY_RUN without an API key.

    Without a fixed response it proposes one deposit per opportunity within
    the risk tolerance (highest APY first) sized to the per-opportunity cap.
    """

    def __init__(self, fixed_response: Optional[Union[str, List[Dict[str, Any]]]] = None):
        self.fixed_response = fixed_response
        self.calls = 0

    def call(self, request: Dict[str, Any], timeout: float) -> str:
        self.calls += 1
        if self.fixed_response is not None:
            if isinstance(self.fixed_response, str):
                return self.fixed_response
            return json.dumps(self.fixed_response)

        portfolio = request.get("portfolio", {})
        budget = min(portfolio.get("available_funds", 0), portfolio.get("max_investment_per_opp", 0))
        tolerance = portfolio.get("risk_tolerance", 10)
        eligible = [o for o in request.get("opportunities", []) if _risk_or_default(o) <= tolerance]
        ranked = sorted(eligible, key=lambda o: o.get("apy", 0), reverse=True)
        strategies = [
            {
                "protocol": o.get("protocol"),
                "chain": o.get("chain"),
                "action": "deposit",
                "amount": budget,
                "expected_apy": o.get("apy", 0),
                "risk_score": _risk_or_default(o),
                "rationale": "Mock proposal",
                "confidence": 0.6,
            }
            for o in ranked[:request.get("max_strategies", 5)]
        ]
        return json.dumps(strategies)


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: "openai", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)

    Raises:
        ValueError: If provider is unknown or a key is missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o", **kwargs)

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022")

    elif provider == "mock":
        return MockClient(fixed_response=kwargs.get("fixed_response"))

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")

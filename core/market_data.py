"""
yield-allocator Core: Market Data

Opportunity feeds and gas oracles consumed by the analyze stage.

Feeds raise on transport failure; the pipeline turns that into a
circuit breaker failure for the chain being scanned.
"""

import json
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
import yaml

from core.models import GasContext, Opportunity

logger = logging.getLogger(__name__)

DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"

_VERSION_SUFFIX = re.compile(r"-v\d+$")


class OpportunityFeed(ABC):
    @abstractmethod
    def fetch(self, chain: str) -> List[Opportunity]:
        """Current opportunities on one chain."""


class GasOracle(ABC):
    @abstractmethod
    def current(self) -> GasContext:
        ...


class StaticOpportunityFeed(OpportunityFeed):
    """In-memory feed, optionally loaded from a YAML or JSON file of pool records."""

    def __init__(self, opportunities: Optional[Iterable[Any]] = None):
        self._opportunities: List[Opportunity] = [
            opp if isinstance(opp, Opportunity) else Opportunity.from_dict(opp)
            for opp in (opportunities or [])
        ]

    @classmethod
    def from_file(cls, path) -> "StaticOpportunityFeed":
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        if isinstance(data, dict):
            data = data.get("opportunities", [])
        if not isinstance(data, list):
            raise ValueError(f"Opportunity file {path} must contain a list of records")
        logger.info(f"Loaded {len(data)} opportunities from {path}")
        return cls(data)

    def fetch(self, chain: str) -> List[Opportunity]:
        chain = chain.lower()
        return [opp for opp in self._opportunities if opp.chain == chain]


class DefiLlamaFeed(OpportunityFeed):
    """
    Pools from the DefiLlama yields API, filtered by chain and project allowlist.

    Project slugs are mapped to protocol names through protocol_map; unmapped
    slugs drop their version suffix ("aave-v3" -> "aave").

    The full pool list is fetched once per refresh_seconds and shared by all chains.
    """

    def __init__(self,
                 url: str = DEFILLAMA_POOLS_URL,
                 projects: Optional[Iterable[str]] = None,
                 min_tvl: float = 1_000_000,
                 timeout: float = 15.0,
                 max_retries: int = 3,
                 refresh_seconds: float = 300.0,
                 protocol_map: Optional[Dict[str, str]] = None):
        self.url = url
        self.projects = tuple(p.lower() for p in projects) if projects else ()
        self.min_tvl = min_tvl
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.refresh_seconds = refresh_seconds
        self.protocol_map = {k.lower(): v.lower() for k, v in (protocol_map or {}).items()}
        self._pools: Optional[List[Dict[str, Any]]] = None
        self._fetched_at = 0.0

    def _get_pools(self) -> List[Dict[str, Any]]:
        if self._pools is not None and time.monotonic() - self._fetched_at < self.refresh_seconds:
            return self._pools

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                r = requests.get(self.url, timeout=self.timeout)
                r.raise_for_status()
                payload = r.json()
                pools = payload.get("data", []) if isinstance(payload, dict) else payload
                self._pools = [p for p in pools if isinstance(p, dict)]
                self._fetched_at = time.monotonic()
                logger.info(f"Fetched {len(self._pools)} pools from DefiLlama")
                return self._pools
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"DefiLlama client error: {status_code}")
                    raise
                logger.warning(f"DefiLlama error ({status_code}), attempt {attempt + 1}/{self.max_retries}")
                last_exception = e
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error fetching pools: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        raise last_exception

    def fetch(self, chain: str) -> List[Opportunity]:
        chain = chain.lower()
        opportunities = []
        for pool in self._get_pools():
            if str(pool.get("chain", "")).lower() != chain:
                continue
            project = str(pool.get("project", "")).lower()
            if self.projects and not any(p in project for p in self.projects):
                continue
            tvl = float(pool.get("tvlUsd") or 0)
            if tvl < self.min_tvl:
                continue
            opportunities.append(self._to_opportunity(pool, chain))
        return opportunities

    def protocol_name(self, project: str) -> str:
        project = project.lower()
        if project in self.protocol_map:
            return self.protocol_map[project]
        return _VERSION_SUFFIX.sub("", project)

    def _to_opportunity(self, pool: Dict[str, Any], chain: str) -> Opportunity:
        sigma = pool.get("sigma")
        tvl = float(pool.get("tvlUsd") or 0)
        return Opportunity.from_dict({
            "id": pool.get("pool"),
            "protocol_name": self.protocol_name(str(pool.get("project", ""))),
            "chain": chain,
            "apy": pool.get("apy"),
            "tvl": tvl,
            "pool_address": pool.get("pool"),
            "is_active": True,
            "risk_attributes": {
                "liquidity_depth": "deep" if tvl > 100_000_000 else "unknown",
                "apy_volatility_30d": sigma or 0,
                "is_inflationary": bool(pool.get("apyReward")) or None,
            },
        })


class StaticGasOracle(GasOracle):
    """Fixed gas quote (50 gwei max fee, 2 gwei tip, $15)."""

    def __init__(self,
                 max_fee_per_gas: int = 50_000_000_000,
                 max_priority_fee_per_gas: int = 2_000_000_000,
                 estimated_cost_usd: float = 15.0,
                 level: str = "medium"):
        self._context = GasContext(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            estimated_cost_usd=estimated_cost_usd,
            level=level,
        )

    def current(self) -> GasContext:
        return self._context

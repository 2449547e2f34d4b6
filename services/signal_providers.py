"""
Readiness Signal Providers
Trust registry, compliance and logistics feeds, read over HTTP with bounded
timeouts. Unavailable providers degrade to the last known value or to a
documented default; they never fail the readiness computation.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

import requests

from config import Config
from services.circuit_breaker import CircuitBreaker
from utils.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class SignalStatus(Enum):
    LIVE = "live"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SignalReading:
    score: int
    last_updated: Optional[datetime] = None
    status: SignalStatus = SignalStatus.LIVE


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class HttpSignalProvider:
    """GET {base_url}/{company_id} -> {"score": 0-100, "lastUpdated": iso8601}"""

    def __init__(self, name: str, base_url: str, timeout: float = Config.SIGNAL_PROVIDER_TIMEOUT_SECONDS,
                 http: Optional[requests.Session] = None):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def get_signal(self, company_id: str) -> SignalReading:
        url = f"{self.base_url}/{company_id}"
        try:
            response = self.http.get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailable(f"{self.name} signal unavailable: {e}", details={"provider": self.name})
        except ValueError as e:
            raise UpstreamUnavailable(f"{self.name} returned invalid JSON: {e}", details={"provider": self.name})

        score = payload.get("score") if isinstance(payload, dict) else None
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 100:
            raise UpstreamUnavailable(
                f"{self.name} returned an invalid score {score!r}", details={"provider": self.name}
            )
        return SignalReading(
            score=int(round(score)),
            last_updated=_parse_timestamp(payload.get("lastUpdated")),
            status=SignalStatus.LIVE,
        )


class ResilientSignalSource:
    """
    Wraps a provider with a circuit breaker and a last-known-value cache.
    A missing provider always reads as unknown.
    """

    def __init__(self, name: str, provider=None, default_score: Optional[int] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self.name = name
        self.provider = provider
        self.default_score = Config.READINESS_UNKNOWN_SIGNAL_SCORE if default_score is None else default_score
        self.breaker = breaker or CircuitBreaker(
            f"signal:{name}",
            failure_threshold=Config.SIGNAL_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=Config.SIGNAL_CIRCUIT_RECOVERY_SECONDS,
        )
        self._last_known: Dict[str, SignalReading] = {}
        self._lock = threading.Lock()

    def read(self, company_id: str) -> SignalReading:
        if self.provider is None:
            return SignalReading(score=self.default_score, status=SignalStatus.UNKNOWN)

        try:
            reading = self.breaker.call(self.provider.get_signal, company_id)
        except UpstreamUnavailable as e:
            with self._lock:
                cached = self._last_known.get(company_id)
            if cached is not None:
                logger.warning(f"⚠️ SIGNAL_STALE: {self.name} for {company_id} - using last known value: {e}")
                return replace(cached, status=SignalStatus.STALE)
            logger.warning(f"⚠️ SIGNAL_UNKNOWN: {self.name} for {company_id} - using default {self.default_score}: {e}")
            return SignalReading(score=self.default_score, status=SignalStatus.UNKNOWN)

        with self._lock:
            self._last_known[company_id] = reading
        return reading


def _source(name: str, url: Optional[str]) -> ResilientSignalSource:
    provider = HttpSignalProvider(name, url) if url else None
    return ResilientSignalSource(name, provider)


def build_default_sources() -> Dict[str, ResilientSignalSource]:
    return {
        "trust": _source("trust", Config.TRUST_SIGNAL_URL),
        "compliance": _source("compliance", Config.COMPLIANCE_SIGNAL_URL),
        "logistics": _source("logistics", Config.LOGISTICS_SIGNAL_URL),
    }

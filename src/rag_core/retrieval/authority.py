"""Source authority scoring for web results."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from rag_core.config import DomainAuthorityConfig
from rag_core.types import WebSearchResult

logger = logging.getLogger(__name__)

_FALLBACK_URL = re.compile(r"https?://(?:www\.)?([^/]+)", flags=re.IGNORECASE)

TIER_WEIGHTS: dict[str, float] = {"tier1": 1.0, "tier2": 0.95, "tier3": 0.85}
DEFAULT_TIER_WEIGHT = 0.5

# domain -> (raw score 0-100, category, tier)
AUTHORITATIVE_DOMAINS: dict[str, tuple[int, str, str]] = {
    "wikipedia.org": (90, "reference", "tier1"),
    "britannica.com": (92, "reference", "tier1"),
    "nature.com": (95, "academic", "tier1"),
    "science.org": (95, "academic", "tier1"),
    "sciencedirect.com": (90, "academic", "tier1"),
    "arxiv.org": (88, "academic", "tier1"),
    "pubmed.ncbi.nlm.nih.gov": (95, "academic", "tier1"),
    "nih.gov": (95, "government", "tier1"),
    "who.int": (94, "government", "tier1"),
    "ieee.org": (90, "academic", "tier1"),
    "acm.org": (90, "academic", "tier1"),
    "developer.mozilla.org": (90, "tech", "tier1"),
    "docs.python.org": (92, "tech", "tier1"),
    "python.org": (88, "tech", "tier1"),
    "github.com": (80, "tech", "tier2"),
    "stackoverflow.com": (82, "tech", "tier2"),
    "reuters.com": (88, "news", "tier1"),
    "apnews.com": (88, "news", "tier1"),
    "bbc.co.uk": (85, "news", "tier2"),
    "bbc.com": (85, "news", "tier2"),
    "nytimes.com": (84, "news", "tier2"),
    "theguardian.com": (82, "news", "tier2"),
    "medium.com": (60, "blog", "tier3"),
    "reddit.com": (55, "forum", "tier3"),
    "quora.com": (50, "forum", "tier3"),
}

# pattern name -> (regex, raw score, category, tier)
DOMAIN_PATTERNS: dict[str, tuple[str, int, str, str]] = {
    "academic_uk": (r"\.ac\.uk$", 85, "academic", "tier1"),
    "academic_au": (r"\.edu\.au$", 85, "academic", "tier1"),
    "us_government": (r"\.gov$", 90, "government", "tier1"),
    "uk_government": (r"\.gov\.uk$", 90, "government", "tier1"),
    "us_education": (r"\.edu$", 85, "academic", "tier1"),
    "military": (r"\.mil$", 85, "government", "tier1"),
    "docs_subdomain": (r"^docs\.", 75, "tech", "tier2"),
}

_TLD_SCORES = {"edu": (85, "academic"), "gov": (90, "government"), "org": (70, "organization")}


@dataclass(slots=True)
class AuthorityScore:
    score: float
    raw_score: float
    source: str
    category: str | None = None
    tier: str | None = None
    matched: str | None = None


def extract_domain(url: str) -> str:
    """Lowercased host without a leading `www.`; empty when nothing parses."""

    if not url:
        return ""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if not host:
        match = _FALLBACK_URL.match(url)
        host = match.group(1) if match else ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


class DomainAuthorityScorer:
    """Scores a URL by exact domain, then pattern, then TLD, then a neutral default."""

    def __init__(self, config: DomainAuthorityConfig | None = None) -> None:
        self.config = config or DomainAuthorityConfig()
        self._patterns = [
            (name, re.compile(regex), raw, category, tier)
            for name, (regex, raw, category, tier) in DOMAIN_PATTERNS.items()
        ]

    def score(self, url: str) -> AuthorityScore:
        if not self.config.enabled:
            return _neutral()
        domain = extract_domain(url)
        if not domain:
            return _neutral()

        custom = self.config.custom_domain_scores.get(domain)
        if custom:
            return AuthorityScore(score=custom / 100, raw_score=custom, source="exact", matched=domain)

        entry = AUTHORITATIVE_DOMAINS.get(domain) or self._parent_entry(domain)
        if entry is not None:
            raw, category, tier = entry
            return AuthorityScore(
                score=raw / 100 * TIER_WEIGHTS.get(tier, DEFAULT_TIER_WEIGHT),
                raw_score=raw,
                source="exact",
                category=category,
                tier=tier,
                matched=domain,
            )

        for name, regex, raw, category, tier in self._patterns:
            if regex.search(domain):
                return AuthorityScore(
                    score=raw / 100 * TIER_WEIGHTS.get(tier, DEFAULT_TIER_WEIGHT),
                    raw_score=raw,
                    source="pattern",
                    category=category,
                    tier=tier,
                    matched=name,
                )

        tld = domain.rsplit(".", 1)[-1]
        if tld in _TLD_SCORES:
            raw, category = _TLD_SCORES[tld]
            return AuthorityScore(score=raw / 100, raw_score=raw, source="tld", category=category, matched=tld)
        return _neutral()

    def score_with_authority(self, url: str, base_score: float = 0.5) -> tuple[float, AuthorityScore]:
        """Boost or penalize `base_score` by the URL's authority, clamped to [0, 1]."""

        authority = self.score(url)
        final = base_score
        if authority.score >= self.config.min_authority_score:
            final = base_score * self.config.high_authority_boost
        elif authority.score < 0.3:
            final = base_score * self.config.low_authority_penalty
        return min(1.0, max(0.0, final)), authority

    def sort_by_authority(self, results: list[WebSearchResult]) -> list[WebSearchResult]:
        scored = []
        for result in results:
            final, authority = self.score_with_authority(result.url, result.score)
            scored.append((authority.score, final, result))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [result for _, _, result in scored]

    def filter_by_authority(
        self, results: list[WebSearchResult], min_score: float | None = None
    ) -> list[WebSearchResult]:
        floor = self.config.min_authority_score if min_score is None else min_score
        return [r for r in results if self.score(r.url).score >= floor]

    def is_authoritative(self, url: str) -> bool:
        authority = self.score(url)
        return authority.source != "default" and authority.score >= self.config.min_authority_score

    def statistics(self, results: list[WebSearchResult]) -> dict[str, Any]:
        scores = [self.score(r.url) for r in results]
        tiers = Counter(s.tier for s in scores if s.tier)
        return {
            "total_results": len(results),
            "tier1_count": tiers.get("tier1", 0),
            "tier2_count": tiers.get("tier2", 0),
            "tier3_count": tiers.get("tier3", 0),
            "default_count": sum(1 for s in scores if not s.tier),
            "average_authority_score": sum(s.score for s in scores) / len(scores) if scores else 0.0,
            "category_distribution": dict(Counter(s.category for s in scores if s.category)),
        }

    @staticmethod
    def _parent_entry(domain: str) -> tuple[int, str, str] | None:
        # en.wikipedia.org inherits wikipedia.org
        parts = domain.split(".")
        for i in range(1, len(parts) - 1):
            entry = AUTHORITATIVE_DOMAINS.get(".".join(parts[i:]))
            if entry is not None:
                return entry
        return None


def _neutral() -> AuthorityScore:
    return AuthorityScore(score=0.5, raw_score=50, source="default")

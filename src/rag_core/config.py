"""Configuration models for the retrieval core."""

from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rag_core.types import ChunkingStrategy, DocumentType, OverlapMode, QueryType, RerankStrategy


class TokenCounterConfig(BaseModel):
    """Default tokenizer selection."""

    default_encoding: str = "cl100k_base"
    default_model: str = "gpt-3.5-turbo"


class ChunkSizeProfile(BaseModel):
    max_tokens: int = Field(ge=10)
    min_tokens: int = Field(ge=1)
    overlap_ratio: float = Field(ge=0.0, le=0.5)
    preferred_strategy: ChunkingStrategy | None = None


def _default_profiles() -> dict[DocumentType, ChunkSizeProfile]:
    prose = ChunkSizeProfile(max_tokens=1000, min_tokens=150, overlap_ratio=0.15)
    plain = ChunkSizeProfile(max_tokens=800, min_tokens=100, overlap_ratio=0.125)
    markup = ChunkSizeProfile(max_tokens=900, min_tokens=120, overlap_ratio=0.15)
    return {
        DocumentType.PDF: prose,
        DocumentType.DOCX: prose.model_copy(),
        DocumentType.TEXT: plain,
        DocumentType.CODE: ChunkSizeProfile(max_tokens=600, min_tokens=80, overlap_ratio=0.2),
        DocumentType.MARKDOWN: markup,
        DocumentType.HTML: markup.model_copy(),
        DocumentType.UNKNOWN: plain.model_copy(),
    }


class AdaptiveChunkingConfig(BaseModel):
    """Per-document-type sizing. Disabled means the sentence defaults apply."""

    enabled: bool = True
    overlap_mode: OverlapMode = OverlapMode.DYNAMIC
    min_overlap_ratio: float = Field(default=0.10, ge=0.0, le=0.5)
    max_overlap_ratio: float = Field(default=0.20, ge=0.0, le=0.5)
    base_overlap_ratio: float = Field(default=0.125, ge=0.0, le=0.5)
    profiles: dict[DocumentType, ChunkSizeProfile] = Field(default_factory=_default_profiles)


class SemanticChunkingConfig(BaseModel):
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    min_sentences_for_semantic: int = Field(default=3, ge=1)
    fallback_to_sentence: bool = True


class ChunkingConfig(BaseModel):
    """Configures boundary-aware sentence packing and its semantic variant."""

    max_tokens: int = Field(default=800, ge=10)
    min_tokens: int = Field(default=100, ge=1)
    overlap_tokens: int = Field(default=100, ge=0)
    overflow_tolerance: float = Field(default=0.15, ge=0.0, le=0.5)
    paragraph_break_ratio: float = Field(default=0.7, gt=0.0, le=1.0)
    respect_paragraph_boundaries: bool = True
    respect_section_boundaries: bool = True
    strategy: ChunkingStrategy = ChunkingStrategy.SENTENCE
    encoding: str | None = None
    adaptive: AdaptiveChunkingConfig = Field(default_factory=AdaptiveChunkingConfig)
    semantic: SemanticChunkingConfig = Field(default_factory=SemanticChunkingConfig)

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingConfig":
        if self.overlap_tokens >= self.max_tokens:
            raise ValueError("overlap_tokens must be less than max_tokens")
        if self.min_tokens > self.max_tokens:
            raise ValueError("min_tokens must not exceed max_tokens")
        return self


class BM25Config(BaseModel):
    k1: float = Field(default=1.2, ge=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    default_top_k: int = Field(default=10, ge=1)


class CircuitBreakerConfig(BaseModel):
    """Per-dependency breaker settings (seconds)."""

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, ge=0.0)
    monitoring_window: float = Field(default=60.0, gt=0.0)
    half_open_max_calls: int = Field(default=3, ge=1)
    call_timeout: float | None = Field(default=30.0, gt=0.0)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True
    jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    retryable_status_codes: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])
    retryable_error_codes: list[str] = Field(
        default_factory=lambda: ["ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED", "EAI_AGAIN"]
    )
    retryable_messages: list[str] = Field(
        default_factory=lambda: ["rate_limit_exceeded", "server_error", "timeout"]
    )


class RecoveryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0.0)
    enable_fallback: bool = True
    enable_degradation: bool = True
    history_limit: int = Field(default=10_000, ge=1)


class HybridWeights(BaseModel):
    """Branch weights. Left unbounded so invalid input can be detected and replaced."""

    vector: float = 0.6
    lexical: float = 0.4

    def is_valid(self) -> bool:
        return 0.0 <= self.vector <= 1.0 and 0.0 <= self.lexical <= 1.0 and (self.vector + self.lexical) > 0

    def normalized(self) -> "HybridWeights":
        total = self.vector + self.lexical
        return HybridWeights(vector=self.vector / total, lexical=self.lexical / total)


WEIGHT_PRESETS: dict[str, HybridWeights] = {
    "balanced": HybridWeights(vector=0.6, lexical=0.4),
    "vector_heavy": HybridWeights(vector=0.8, lexical=0.2),
    "lexical_heavy": HybridWeights(vector=0.3, lexical=0.7),
    "equal": HybridWeights(vector=0.5, lexical=0.5),
}


class ABTestVariant(BaseModel):
    name: str
    weights: HybridWeights
    traffic_percentage: int = Field(ge=0, le=100)


class ABTestConfig(BaseModel):
    enabled: bool = False
    default_variant: str = "A"
    variants: list[ABTestVariant] = Field(
        default_factory=lambda: [
            ABTestVariant(name="A", weights=HybridWeights(vector=0.6, lexical=0.4), traffic_percentage=34),
            ABTestVariant(name="B", weights=HybridWeights(vector=0.7, lexical=0.3), traffic_percentage=33),
            ABTestVariant(name="C", weights=HybridWeights(vector=0.5, lexical=0.5), traffic_percentage=33),
        ]
    )


class HybridSearchConfig(BaseModel):
    default_weights: HybridWeights = Field(default_factory=HybridWeights)
    min_score: float = Field(default=0.0, ge=0.0)
    max_results: int = Field(default=20, ge=1)
    enable_deduplication: bool = True
    deduplication_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    ab_testing: ABTestConfig = Field(default_factory=ABTestConfig)


class DeduplicationConfig(BaseModel):
    enabled: bool = True
    exact_duplicate_threshold: float = Field(default=1.0, ge=0.0, le=1.0)
    near_duplicate_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    use_content_hash: bool = True
    use_fuzzy_matching: bool = True
    preserve_highest_score: bool = True


class DiversityConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    lambda_: float = Field(default=0.7, ge=0.0, le=1.0, alias="lambda")
    max_results: int = Field(default=10, ge=1)


def _default_trusted_domains() -> list[str]:
    return [
        "wikipedia.org",
        "edu",
        "gov",
        "ac.uk",
        "edu.au",
        "nih.gov",
        "nature.com",
        "science.org",
        "ieee.org",
        "acm.org",
    ]


class RerankingConfig(BaseModel):
    """Multi-factor reranking weights. Weights should sum to about 1.0."""

    strategy: RerankStrategy = RerankStrategy.SCORE_BASED
    top_k: int = Field(default=20, ge=1)
    relevance_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    domain_authority_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    freshness_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    original_score_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    trusted_domains: list[str] = Field(default_factory=_default_trusted_domains)
    freshness_decay_days: int = Field(default=365, ge=1)
    max_freshness_boost: float = Field(default=1.3, ge=1.0)
    title_match_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    content_match_weight: float = Field(default=0.4, ge=0.0, le=1.0)

    def weight_sum(self) -> float:
        return (
            self.relevance_weight
            + self.domain_authority_weight
            + self.freshness_weight
            + self.original_score_weight
        )


class DomainAuthorityConfig(BaseModel):
    enabled: bool = True
    min_authority_score: float = Field(default=0.5, ge=0.0, le=1.0)
    high_authority_boost: float = Field(default=1.2, ge=1.0)
    low_authority_penalty: float = Field(default=0.9, ge=0.0, le=1.0)
    custom_domain_scores: dict[str, float] = Field(default_factory=dict)


def _default_query_type_thresholds() -> dict[QueryType, float]:
    return {
        QueryType.FACTUAL: 0.75,
        QueryType.CONCEPTUAL: 0.65,
        QueryType.PROCEDURAL: 0.70,
        QueryType.EXPLORATORY: 0.60,
        QueryType.COMPARATIVE: 0.65,
        QueryType.UNKNOWN: 0.70,
    }


class ThresholdConfig(BaseModel):
    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    min_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    adaptive_enabled: bool = True
    fallback_enabled: bool = True
    use_distribution_analysis: bool = True
    percentile: float = Field(default=0.75, gt=0.0, lt=1.0)
    query_type_thresholds: dict[QueryType, float] = Field(default_factory=_default_query_type_thresholds)
    min_results: int = Field(default=3, ge=0)
    max_results: int = Field(default=10, ge=1)
    lower_step: float = Field(default=0.1, gt=0.0)
    raise_step: float = Field(default=0.05, gt=0.0)
    iteration_step: float = Field(default=0.05, gt=0.0)
    max_iterations: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_band(self) -> "ThresholdConfig":
        if self.min_threshold > self.max_threshold:
            raise ValueError("min_threshold must not exceed max_threshold")
        return self


class BudgetAllocation(BaseModel):
    """Context window split. Ratios are renormalized when they do not sum to 1."""

    document_context: float = Field(default=0.50, ge=0.0)
    web_results: float = Field(default=0.20, ge=0.0)
    system_prompt: float = Field(default=0.05, ge=0.0)
    user_prompt: float = Field(default=0.05, ge=0.0)
    response_reserve: float = Field(default=0.15, ge=0.0)
    overhead: float = Field(default=0.05, ge=0.0)


class BudgetConfig(BaseModel):
    default_model: str = "gpt-3.5-turbo"
    encoding: str | None = None
    allocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    strict_mode: bool = False
    min_truncation_tokens: int = Field(default=100, ge=1)


class RetrievalConfig(BaseModel):
    """Configures the query-time pipeline."""

    lexical_k: int = Field(default=20, ge=1)
    vector_k: int = Field(default=20, ge=1)
    final_k: int = Field(default=5, ge=1)
    oversample_factor: int = Field(default=4, ge=1)
    enable_web_search: bool = False
    web_k: int = Field(default=5, ge=1)
    request_deadline: float = Field(default=10.0, gt=0.0)
    use_adaptive_threshold: bool = True
    enable_reranking: bool = True


class CoreConfig(BaseModel):
    """Aggregate of every component config, wired once by the service."""

    tokens: TokenCounterConfig = Field(default_factory=TokenCounterConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    bm25: BM25Config = Field(default_factory=BM25Config)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    hybrid: HybridSearchConfig = Field(default_factory=HybridSearchConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    diversity: DiversityConfig = Field(default_factory=DiversityConfig)
    reranking: RerankingConfig = Field(default_factory=RerankingConfig)
    domain_authority: DomainAuthorityConfig = Field(default_factory=DomainAuthorityConfig)
    threshold: ThresholdConfig = Field(default_factory=ThresholdConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "CoreConfig":
        config = cls()
        encoding = os.getenv("RAG_CORE_ENCODING")
        if encoding:
            config.tokens.default_encoding = encoding
            config.budget.encoding = encoding
        model = os.getenv("RAG_CORE_MODEL")
        if model:
            config.tokens.default_model = model
            config.budget.default_model = model
        deadline = os.getenv("RAG_CORE_REQUEST_DEADLINE")
        if deadline:
            config.retrieval.request_deadline = float(deadline)
        if os.getenv("RAG_CORE_ENABLE_WEB_SEARCH", "").lower() in {"1", "true", "yes"}:
            config.retrieval.enable_web_search = True
        config.log_level = os.getenv("RAG_CORE_LOG_LEVEL", config.log_level)
        return config

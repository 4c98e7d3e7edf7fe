"""Token budget calculation and context allocation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from math import floor
from typing import TypeVar

from rag_core.config import BudgetAllocation, BudgetConfig
from rag_core.errors import TokenBudgetExceededError
from rag_core.tokens.counter import TokenCounter
from rag_core.types import ScoredResult, WebSearchResult

logger = logging.getLogger(__name__)

MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-3.5-turbo-1106": 16385,
    "gpt-3.5-turbo-0125": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4-turbo-preview": 128000,
    "gpt-4-0125-preview": 128000,
    "gpt-4-1106-preview": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
}
DEFAULT_MODEL_LIMIT = 16385
_Item = TypeVar("_Item", ScoredResult, WebSearchResult)
_ELLIPSIS = "..."


@dataclass(slots=True)
class BudgetSlots:
    document_context: int
    web_results: int
    system_prompt: int
    user_prompt: int
    response_reserve: int
    overhead: int

    def total(self) -> int:
        return (
            self.document_context
            + self.web_results
            + self.system_prompt
            + self.user_prompt
            + self.response_reserve
            + self.overhead
        )


@dataclass(slots=True)
class BudgetUsage:
    document_context: int = 0
    web_results: int = 0
    system_prompt: int = 0
    user_prompt: int = 0

    @property
    def total(self) -> int:
        return self.document_context + self.web_results + self.system_prompt + self.user_prompt


@dataclass(slots=True)
class BudgetRemaining:
    document_context: int
    web_results: int
    total: int


@dataclass(slots=True)
class TokenBudget:
    model: str
    encoding: str
    model_limit: int
    available_budget: int
    allocations: BudgetSlots
    usage: BudgetUsage
    remaining: BudgetRemaining
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContextAllocation:
    """Context that fits the budget, with measured token counts."""

    document_context: list[ScoredResult]
    web_results: list[WebSearchResult]
    document_tokens: int
    web_tokens: int
    budget: TokenBudget
    warnings: list[str] = field(default_factory=list)
    truncated: int = 0

    @property
    def total(self) -> int:
        return self.document_tokens + self.web_tokens


@dataclass(slots=True)
class BudgetCheck:
    fits: bool
    document_tokens: int
    web_tokens: int
    warnings: list[str]
    errors: list[str]


def format_document(result: ScoredResult) -> str:
    return f"[Document] {result.title or result.document_id}\n{result.content}"


def format_web_result(result: WebSearchResult) -> str:
    return f"[Web Source] {result.title}\nURL: {result.url}\n{result.content}"


class TokenBudgetAllocator:
    """Partitions a model context window and fits retrieved context into it.

    Budget layout:
    1. `overhead` and `response_reserve` come off the model limit first.
    2. System and user prompts are measured with the token counter (or given
       their nominal ratio when absent) and reserved next.
    3. What is left is split between document and web context in the ratio
       `document_context : web_results`.

    Allocated slots never sum to more than the model limit; an oversized
    prompt shows up in `usage` and `warnings` instead.
    """

    def __init__(self, counter: TokenCounter, config: BudgetConfig | None = None) -> None:
        self.counter = counter
        self.config = config or BudgetConfig()

    @staticmethod
    def model_limit(model: str) -> int:
        if model in MODEL_TOKEN_LIMITS:
            return MODEL_TOKEN_LIMITS[model]
        if "gpt-4-turbo" in model or "gpt-4o" in model:
            return MODEL_TOKEN_LIMITS["gpt-4-turbo"]
        if "gpt-4-32k" in model:
            return MODEL_TOKEN_LIMITS["gpt-4-32k"]
        if "gpt-4" in model:
            return MODEL_TOKEN_LIMITS["gpt-4"]
        if "gpt-3.5-turbo" in model:
            return MODEL_TOKEN_LIMITS["gpt-3.5-turbo"]
        logger.warning("Unknown model, using default token limit", extra={"model": model})
        return DEFAULT_MODEL_LIMIT

    def encoding_for(self, model: str) -> str:
        return self.config.encoding or self.counter.encoding_for_model(model)

    def calculate_budget(
        self,
        model: str | None = None,
        *,
        system_prompt: str | None = None,
        user_prompt: str | None = None,
        allocation: BudgetAllocation | None = None,
        max_response_tokens: int | None = None,
        strict: bool | None = None,
    ) -> TokenBudget:
        model = model or self.config.default_model
        encoding = self.encoding_for(model)
        limit = self.model_limit(model)
        ratios = _normalized(allocation or self.config.allocation)

        overhead = floor(limit * ratios.overhead)
        response = max_response_tokens if max_response_tokens is not None else floor(
            limit * ratios.response_reserve
        )
        response = max(0, min(response, limit - overhead))
        available = max(0, limit - response - overhead)

        nominal_system = floor(available * ratios.system_prompt)
        nominal_user = floor(available * ratios.user_prompt)
        system_used = (
            self.counter.count(system_prompt, encoding) if system_prompt is not None else nominal_system
        )
        user_used = self.counter.count(user_prompt, encoding) if user_prompt is not None else nominal_user

        system_slot = min(system_used, available)
        user_slot = min(user_used, available - system_slot)
        remainder = available - system_slot - user_slot

        context_ratio = ratios.document_context + ratios.web_results
        document_share = ratios.document_context / context_ratio if context_ratio > 0 else 0.0
        web_share = ratios.web_results / context_ratio if context_ratio > 0 else 0.0
        allocations = BudgetSlots(
            document_context=floor(remainder * document_share),
            web_results=floor(remainder * web_share),
            system_prompt=system_slot,
            user_prompt=user_slot,
            response_reserve=response,
            overhead=overhead,
        )
        usage = BudgetUsage(system_prompt=system_used, user_prompt=user_used)

        warnings: list[str] = []
        if system_used > nominal_system:
            warnings.append(f"System prompt exceeds allocation: {system_used} > {nominal_system}")
        if user_used > nominal_user:
            warnings.append(f"User prompt exceeds allocation: {user_used} > {nominal_user}")
        if usage.total > available:
            warnings.append(f"Total usage exceeds available budget: {usage.total} > {available}")

        if (strict if strict is not None else self.config.strict_mode) and warnings:
            raise TokenBudgetExceededError(
                f"Token budget exceeded: {'; '.join(warnings)}",
                details={"model": model, "model_limit": limit},
            )

        return TokenBudget(
            model=model,
            encoding=encoding,
            model_limit=limit,
            available_budget=available,
            allocations=allocations,
            usage=usage,
            remaining=BudgetRemaining(
                document_context=allocations.document_context,
                web_results=allocations.web_results,
                total=available - usage.total,
            ),
            warnings=warnings,
        )

    def allocate_context(
        self,
        budget: TokenBudget,
        document_context: Sequence[ScoredResult] = (),
        web_results: Sequence[WebSearchResult] = (),
    ) -> ContextAllocation:
        """Select the highest scored context that fits each budget slot.

        An item that does not fit is truncated when at least
        `min_truncation_tokens` remain in its slot, otherwise dropped; either
        way a warning is recorded and filling that slot stops.

        `budget` is not modified. The returned allocation's `budget` is a copy
        with usage and remaining updated, so one budget can be allocated
        against repeatedly.
        """
        warnings: list[str] = []
        documents, document_tokens, doc_truncated = self._fill(
            sorted(document_context, key=lambda item: item.score, reverse=True),
            max(0, budget.remaining.document_context),
            budget.encoding,
            format_document,
            "Document context",
            warnings,
        )
        web, web_tokens, web_truncated = self._fill(
            sorted(web_results, key=lambda item: item.score, reverse=True),
            max(0, budget.remaining.web_results),
            budget.encoding,
            format_web_result,
            "Web results",
            warnings,
        )

        # the caller's budget is left as is; the allocation carries the spent copy
        usage = replace(budget.usage, document_context=document_tokens, web_results=web_tokens)
        spent = replace(
            budget,
            usage=usage,
            remaining=BudgetRemaining(
                document_context=budget.remaining.document_context - document_tokens,
                web_results=budget.remaining.web_results - web_tokens,
                total=budget.available_budget - usage.total,
            ),
            warnings=[*budget.warnings, *warnings],
        )

        logger.info(
            "Context allocated to budget",
            extra={
                "documents_in": len(document_context),
                "documents_kept": len(documents),
                "web_in": len(web_results),
                "web_kept": len(web),
                "document_tokens": document_tokens,
                "web_tokens": web_tokens,
            },
        )
        return ContextAllocation(
            document_context=documents,
            web_results=web,
            document_tokens=document_tokens,
            web_tokens=web_tokens,
            budget=spent,
            warnings=warnings,
            truncated=doc_truncated + web_truncated,
        )

    def count_context_tokens(
        self,
        budget: TokenBudget,
        document_context: Sequence[ScoredResult] = (),
        web_results: Sequence[WebSearchResult] = (),
    ) -> tuple[int, int]:
        documents = sum(self.counter.count(format_document(item), budget.encoding) for item in document_context)
        web = sum(self.counter.count(format_web_result(item), budget.encoding) for item in web_results)
        return documents, web

    def check_budget(
        self,
        budget: TokenBudget,
        document_context: Sequence[ScoredResult] = (),
        web_results: Sequence[WebSearchResult] = (),
    ) -> BudgetCheck:
        documents, web = self.count_context_tokens(budget, document_context, web_results)
        fits = (
            documents <= budget.remaining.document_context
            and web <= budget.remaining.web_results
            and documents + web <= budget.remaining.total
        )
        warnings: list[str] = []
        errors: list[str] = []
        if documents > budget.allocations.document_context:
            warnings.append(
                f"Document context exceeds allocation: {documents} > {budget.allocations.document_context}"
            )
        if web > budget.allocations.web_results:
            warnings.append(f"Web results exceed allocation: {web} > {budget.allocations.web_results}")
        if not fits:
            errors.extend(warnings or [f"Total context exceeds remaining budget: {documents + web}"])
        return BudgetCheck(fits=fits, document_tokens=documents, web_tokens=web, warnings=warnings, errors=errors)

    @staticmethod
    def summary(budget: TokenBudget) -> str:
        return (
            f"Token Budget: {budget.usage.total}/{budget.model_limit} tokens used, "
            f"{budget.remaining.total} remaining. "
            f"Allocations: Documents={budget.allocations.document_context}, "
            f"Web={budget.allocations.web_results}, "
            f"Response={budget.allocations.response_reserve}"
        )

    def _fill(
        self,
        items: list[_Item],
        slot: int,
        encoding: str,
        render: Callable[[_Item], str],
        label: str,
        warnings: list[str],
    ) -> tuple[list[_Item], int, int]:
        kept: list[_Item] = []
        used = 0
        for position, item in enumerate(items):
            tokens = self.counter.count(render(item), encoding)
            if used + tokens <= slot:
                kept.append(item)
                used += tokens
                continue

            room = slot - used
            shortened = None
            if room >= self.config.min_truncation_tokens:
                shortened = self._truncate_item(item, room, encoding, render)
            if shortened is not None:
                kept.append(shortened)
                used += self.counter.count(render(shortened), encoding)
                warnings.append(f"{label} truncated to fit allocation of {slot} tokens")
            dropped = len(items) - len(kept)
            if dropped:
                warnings.append(f"{label} over budget: dropped {dropped} item(s) beyond {slot} tokens")
            return kept, used, 0 if shortened is None else 1
        return kept, used, 0

    def _truncate_item(
        self, item: _Item, room: int, encoding: str, render: Callable[[_Item], str]
    ) -> _Item | None:
        frame = self.counter.count(render(replace(item, content=_ELLIPSIS)), encoding)
        content_budget = room - frame
        while content_budget > 0:
            content = self.counter.truncate(item.content, content_budget, encoding)
            candidate = replace(item, content=content + _ELLIPSIS)
            if self.counter.count(render(candidate), encoding) <= room:
                return candidate
            content_budget -= 1
        return None


def _normalized(allocation: BudgetAllocation) -> BudgetAllocation:
    values = allocation.model_dump()
    total = sum(values.values())
    if total <= 0:
        return BudgetAllocation()
    if abs(total - 1.0) <= 0.01:
        return allocation
    logger.warning("Budget allocation ratios do not sum to 1.0", extra={"total_ratio": total})
    return BudgetAllocation(**{key: value / total for key, value in values.items()})

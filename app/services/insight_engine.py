"""
Insight engine — tiered model dispatch with retry, fallback and cost accounting.

Control flow is a small state machine driven by `next_state()`, a pure
reducer over (current state, attempt outcome). The async `generate()` loop
only performs the network call, records the attempt in the usage ledger
and asks the reducer what to do next.

    TRY_PRIMARY ──ok──────────────────────────► SUCCEEDED
        │ fail, attempts left, on premium model
        ▼
    TRY_FALLBACK ──ok─────────────────────────► SUCCEEDED
        │ fail, attempts exhausted
        ▼
      FAILED

A failure on a non-premium model with attempts left retries the same model
after `backoff × attempt` seconds.

The engine never touches credits or conversations. Those are the
orchestrating layer's post-conditions.
"""
import asyncio
import json
import logging
import math
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

from app.models.insight import ConversationTurn, InsightResult, PlanTier, UsageRecord, is_premium, tier_label
from app.services.errors import InsightGenerationError
from app.services.llm_client import ModelProvider, ProviderResponse
from app.services.usage_ledger import UsageLedger
from config import get_settings

logger = logging.getLogger(__name__)

PROVIDER_SERVICE = "OpenAI"

# USD per 1M tokens
DEFAULT_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o":      {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
}


# ─────────────────────────────────────────────
# Pricing / tokens
# ─────────────────────────────────────────────

def load_pricing(override_json: str = "") -> Dict[str, Dict[str, float]]:
    """DEFAULT_PRICING merged with a JSON override; invalid JSON is ignored."""
    pricing = {model: dict(prices) for model, prices in DEFAULT_PRICING.items()}
    if not override_json:
        return pricing
    try:
        override = json.loads(override_json)
        for model, prices in override.items():
            pricing[model] = {"input": float(prices["input"]), "output": float(prices["output"])}
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        logger.warning(f"Ignoring invalid MODEL_PRICING_JSON: {e}")
    return pricing


def estimate_tokens(text: str) -> int:
    """Rough token count: characters ÷ 4, rounded up."""
    return math.ceil(len(text or "") / 4)


def compute_cost(
    model: str, input_tokens: int, output_tokens: int, pricing: Dict[str, Dict[str, float]],
) -> float:
    prices = pricing.get(model)
    if prices is None:
        logger.warning(f"No price configured for model {model}; cost recorded as 0")
        return 0.0
    return input_tokens / 1_000_000 * prices["input"] + output_tokens / 1_000_000 * prices["output"]


# ─────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────

class AttemptStatus(str, Enum):
    TRY_PRIMARY = "TRY_PRIMARY"
    TRY_FALLBACK = "TRY_FALLBACK"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class EngineState(NamedTuple):
    status: AttemptStatus
    model: str
    attempt: int            # attempts already made
    delay: float = 0.0      # seconds to wait before the next attempt


TERMINAL = (AttemptStatus.SUCCEEDED, AttemptStatus.FAILED)


def initial_state(model: str) -> EngineState:
    return EngineState(AttemptStatus.TRY_PRIMARY, model, 0)


def next_state(
    state: EngineState,
    succeeded: bool,
    *,
    max_attempts: int,
    premium_model: str,
    basic_model: str,
    backoff_seconds: float,
) -> EngineState:
    """Transition after one attempt. `state.attempt` counts attempts before this one."""
    attempt = state.attempt + 1
    if succeeded:
        return EngineState(AttemptStatus.SUCCEEDED, state.model, attempt)
    if attempt >= max_attempts:
        return EngineState(AttemptStatus.FAILED, state.model, attempt)
    if state.model == premium_model and basic_model != premium_model:
        return EngineState(AttemptStatus.TRY_FALLBACK, basic_model, attempt)
    return EngineState(state.status, state.model, attempt, delay=backoff_seconds * attempt)


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

Turn = Union[ConversationTurn, Dict[str, str]]


class InsightEngine:
    def __init__(
        self,
        provider: ModelProvider,
        ledger: UsageLedger,
        premium_model: Optional[str] = None,
        basic_model: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        attempt_timeout: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        pricing: Optional[Dict[str, Dict[str, float]]] = None,
    ):
        settings = get_settings()
        self.provider = provider
        self.ledger = ledger
        self.premium_model = premium_model or settings.PREMIUM_MODEL
        self.basic_model = basic_model or settings.BASIC_MODEL
        self.max_attempts = max_attempts if max_attempts is not None else settings.INSIGHT_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.INSIGHT_RETRY_BACKOFF_SECONDS
        )
        self.attempt_timeout = attempt_timeout or settings.INSIGHT_ATTEMPT_TIMEOUT_SECONDS
        self.max_output_tokens = max_output_tokens or settings.MAX_OUTPUT_TOKENS
        self.pricing = pricing if pricing is not None else load_pricing(settings.MODEL_PRICING_JSON)

    def select_model(self, plan_tier: Union[PlanTier, str, None]) -> str:
        """premium → high-capability model, every other tier (None included) → economical model"""
        return self.premium_model if is_premium(plan_tier) else self.basic_model

    async def generate(
        self,
        system_prompt: str,
        turns: Sequence[Turn],
        plan_tier: Union[PlanTier, str, None] = PlanTier.FREE_TRIAL,
        user_id: Optional[str] = None,
    ) -> InsightResult:
        """
        Run one insight request through the retry/fallback state machine.

        Every attempt, failed or successful, produces exactly one ledger record.

        Raises:
            InsightGenerationError: every attempt failed; wraps the last error.
        """
        messages = _to_messages(turns)
        input_text = "\n".join(m["content"] for m in messages)
        state = initial_state(self.select_model(plan_tier))
        last_error: Optional[Exception] = None

        while state.status not in TERMINAL:
            if state.delay:
                await asyncio.sleep(state.delay)

            model = state.model
            logger.info(
                f"Model call attempt {state.attempt + 1}: model={model}, "
                f"plan={tier_label(plan_tier)}, user={user_id}"
            )
            request_payload = {"model": model, "system": system_prompt, "messages": messages}
            logger.debug(f"Model request payload: {json.dumps(request_payload)[:2000]}")

            try:
                response = await asyncio.wait_for(
                    self.provider.complete(system_prompt, messages, model, self.max_output_tokens),
                    timeout=self.attempt_timeout,
                )
            except Exception as e:
                # CancelledError is a BaseException and propagates
                last_error = e
                error_message = _describe(e, self.attempt_timeout)
                logger.error(
                    f"Model call failed (attempt {state.attempt + 1}, model {model}): {error_message}",
                    exc_info=True,
                )
                await self._record(
                    user_id, model, 0, 0, 0.0, False, error_message, request_payload,
                    getattr(e, "response_payload", None),
                )
                state = self._advance(state, False)
                if state.status is AttemptStatus.TRY_FALLBACK and state.model != model:
                    logger.warning(f"Falling back to {state.model} after error with {model}.")
                continue

            input_tokens, output_tokens = _usage(response, input_text)
            cost = compute_cost(model, input_tokens, output_tokens, self.pricing)
            await self._record(
                user_id, model, input_tokens, output_tokens, cost, True, None, request_payload, response.raw,
            )
            state = self._advance(state, True)
            logger.info(
                f"Model call succeeded: model={model}, tokens={input_tokens}/{output_tokens}, cost=${cost:.6f}"
            )
            return InsightResult(
                text=response.text,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
                success=True,
                attempts=state.attempt,
            )

        raise InsightGenerationError(state.attempt, last_error)

    def _advance(self, state: EngineState, succeeded: bool) -> EngineState:
        return next_state(
            state,
            succeeded,
            max_attempts=self.max_attempts,
            premium_model=self.premium_model,
            basic_model=self.basic_model,
            backoff_seconds=self.backoff_seconds,
        )

    async def _record(
        self, user_id, model, input_tokens, output_tokens, cost, success, error_message,
        request_payload, response_payload,
    ) -> None:
        await self.ledger.record(UsageRecord(
            user_id=user_id,
            service=PROVIDER_SERVICE,
            endpoint=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            success=success,
            error_message=error_message,
            request_payload=request_payload,
            response_payload=response_payload,
        ))


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def _to_messages(turns: Sequence[Turn]) -> List[Dict[str, str]]:
    messages = []
    for turn in turns:
        if isinstance(turn, ConversationTurn):
            messages.append({"role": turn.role, "content": turn.content})
        else:
            messages.append({"role": turn["role"], "content": turn["content"]})
    return messages


def _usage(response: ProviderResponse, input_text: str):
    """Provider-reported token counts, estimated from text length when absent."""
    input_tokens = response.input_tokens if response.input_tokens is not None else estimate_tokens(input_text)
    output_tokens = (
        response.output_tokens if response.output_tokens is not None else estimate_tokens(response.text)
    )
    return input_tokens, output_tokens


def _describe(error: Exception, timeout: float) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"Attempt timed out after {timeout}s"
    return str(error) or type(error).__name__

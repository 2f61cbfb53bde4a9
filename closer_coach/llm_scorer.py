import os
import re
import json
import time
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Callable, TypeVar

from dotenv import load_dotenv
from openai import OpenAI

from .schemas import (
    TranscriptSegment, ReferenceScript, CallContext, CallRecord, PhaseScore,
    ScoringResponse, ScoringResult, ScoredCall, FALLBACK_FEEDBACK, FALLBACK_SUMMARY
)
from .call_context import ContextPolicy, get_context_policy
from .prompts import build_system_prompt, build_user_prompt
from .scoring import calculate_overall_score

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Model configuration profiles
MODEL_CONFIGS = {
    "gpt-4o": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "context_window": 128000,
        "description": "Standard GPT-4o model"
    },
    "gpt-4o-mini": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "context_window": 128000,
        "description": "Cost-effective GPT-4o variant"
    },
    "gpt-4.1": {
        "token_param": "max_tokens",
        "supports_temperature": True,
        "context_window": 1000000,
        "description": "Long-context GPT-4.1"
    },
    "gpt-5": {
        "token_param": "max_completion_tokens",
        "supports_temperature": False,
        "context_window": 400000,
        "description": "Reasoning model, fixed temperature"
    },
    "o1": {
        "token_param": "max_completion_tokens",
        "supports_temperature": False,
        "context_window": 128000,
        "description": "Advanced reasoning model"
    },
    "o3-mini": {
        "token_param": "max_completion_tokens",
        "supports_temperature": False,
        "context_window": 200000,
        "description": "Cost-effective reasoning model"
    }
}

FENCED_JSON = re.compile(r'```(?:json)?\s*([\s\S]*?)\s*```')
JSON_OBJECT_SPAN = re.compile(r'\{[\s\S]*\}')


class ResponseFormatError(ValueError):
    """The model answered, but not with usable JSON"""


def extract_json(content: Optional[str]) -> Any:
    """Parse model output: whole body, then a ```json fence, then the first {...} span"""
    if not content or not content.strip():
        raise ResponseFormatError("Empty response")

    content = content.strip()
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    fenced = FENCED_JSON.search(content)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            pass

    span = JSON_OBJECT_SPAN.search(content)
    if span:
        return json.loads(span.group(0))

    raise ResponseFormatError(f"No JSON found in response: {content[:200]}")


class LLMScorer:
    """Scores a call transcript against the CLOSER rubric with an OpenAI chat model.

    Every request gets up to ``max_attempts`` tries. Any exception raised while
    requesting, parsing or validating a reply counts as a failed try, followed
    by a ``retry_delay * attempt`` second pause. When all tries fail
    ``score_call`` returns the marked fallback result instead of raising.
    """

    def __init__(self, model: str = None, client: Optional[Any] = None,
                 max_attempts: Optional[int] = None, retry_delay: float = 1.0):
        self.model = model or os.getenv("DEFAULT_LLM_MODEL", "gpt-4o")
        self.temperature = float(os.getenv("LLM_TEMPERATURE", "0.3"))
        self.max_tokens = int(os.getenv("LLM_MAX_TOKENS", "4000"))
        self.max_attempts = max_attempts or int(os.getenv("SCORING_MAX_ATTEMPTS", "3"))
        self.retry_delay = retry_delay

        if client is None:
            if not os.getenv("OPENAI_API_KEY"):
                raise ValueError("OPENAI_API_KEY environment variable not set")
            timeout = float(os.getenv("LLM_TIMEOUT", "120"))
            client = OpenAI(api_key=os.getenv("OPENAI_API_KEY"), timeout=timeout)
        self.client = client

        # Get model configuration
        self.model_config = self._get_model_config()

    def _get_model_config(self) -> Dict[str, Any]:
        """Get configuration for the current model"""
        if self.model in MODEL_CONFIGS:
            return MODEL_CONFIGS[self.model]

        # Longest prefix wins so "gpt-4o-mini-2024" maps to gpt-4o-mini, not gpt-4o
        for config_model in sorted(MODEL_CONFIGS, key=len, reverse=True):
            if self.model.startswith(config_model):
                return MODEL_CONFIGS[config_model]

        return {
            "token_param": "max_tokens",
            "supports_temperature": True,
            "context_window": 8000,
            "description": f"Unknown model: {self.model}"
        }

    def get_model_info(self) -> Dict[str, Any]:
        """Get information about the current model"""
        return {
            "model": self.model,
            "config": self.model_config.copy(),
            "temperature": self.temperature if self.model_config.get("supports_temperature", True) else 1.0,
            "max_tokens": self.max_tokens,
            "max_attempts": self.max_attempts,
        }

    def _build_request(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        request_params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            "response_format": {"type": "json_object"},
        }

        token_param = self.model_config.get("token_param", "max_tokens")
        request_params[token_param] = self.max_tokens

        if self.model_config.get("supports_temperature", True):
            request_params["temperature"] = self.temperature

        return request_params

    def complete_json(self, system_prompt: str, user_prompt: str,
                      validate: Callable[[Any], T], label: str = "request") -> Optional[T]:
        """Run the attempt loop; returns the validated value or None when every attempt failed"""
        request_params = self._build_request(system_prompt, user_prompt)

        for attempt in range(self.max_attempts):
            try:
                logger.info(f"[{label}] Attempt {attempt + 1}/{self.max_attempts} with {self.model}")
                response = self.client.chat.completions.create(**request_params)
                if not response.choices:
                    raise ResponseFormatError("Response has no choices")
                content = response.choices[0].message.content
                return validate(extract_json(content))
            except Exception as e:
                logger.warning(f"[{label}] Attempt {attempt + 1} failed: {type(e).__name__}: {e}")
                if attempt < self.max_attempts - 1 and self.retry_delay:
                    time.sleep(self.retry_delay * (attempt + 1))

        logger.error(f"[{label}] All {self.max_attempts} attempts failed")
        return None

    def score_call(self, transcript: List[TranscriptSegment],
                   context: CallContext = CallContext.NEW_LEAD,
                   reference_script: Optional[ReferenceScript] = None,
                   call_id: str = "call") -> ScoringResult:
        policy = get_context_policy(context)

        if not transcript:
            logger.warning(f"[{call_id}] Empty transcript, returning fallback result")
            return self.fallback_result(policy)

        system_prompt = build_system_prompt(policy, reference_script)
        user_prompt = build_user_prompt(transcript, policy)

        response = self.complete_json(
            system_prompt, user_prompt, ScoringResponse.model_validate, label=call_id
        )
        if response is None:
            return self.fallback_result(policy)

        scores = self._retained_scores(response.scores, policy)
        overall = calculate_overall_score(scores)
        if abs(overall - response.overall_score) >= 1:
            logger.debug(f"[{call_id}] Model reported {response.overall_score}, recomputed {overall}")

        return ScoringResult(
            overall_score=overall,
            scores=scores,
            objections_detected=response.objections_detected,
            summary=response.summary,
            call_context=policy.context,
            llm_model=self.model,
            scored_at=datetime.now(),
        )

    def _retained_scores(self, scores: List[PhaseScore], policy: ContextPolicy) -> List[PhaseScore]:
        kept: Dict[str, PhaseScore] = {}
        for score in scores:
            if not policy.is_retained(score.phase):
                logger.debug(f"Dropping excluded phase '{score.phase}' for {policy.context.value}")
                continue
            if score.phase in kept:
                logger.debug(f"Ignoring duplicate phase '{score.phase}'")
                continue
            kept[score.phase] = score

        missing = [p for p in policy.retained_phases if p not in kept]
        if missing:
            logger.warning(f"Response is missing phases: {', '.join(missing)}")
        return list(kept.values())

    def fallback_result(self, policy: ContextPolicy) -> ScoringResult:
        """Inert result: every retained phase at 0 with the 'Unable to analyze' marker"""
        return ScoringResult(
            overall_score=0,
            scores=[
                PhaseScore(phase=phase, score=0, feedback=FALLBACK_FEEDBACK)
                for phase in policy.retained_phases
            ],
            objections_detected=[],
            summary=FALLBACK_SUMMARY,
            call_context=policy.context,
            llm_model=self.model,
            scored_at=datetime.now(),
        )

    def score_record(self, record: CallRecord,
                     reference_script: Optional[ReferenceScript] = None,
                     context: Optional[CallContext] = None) -> ScoredCall:
        """Score a parsed call record; an explicit context overrides the record's own"""
        call_context = context or record.call_context
        result = self.score_call(
            record.segments, call_context, reference_script, call_id=record.call_id
        )
        return ScoredCall(
            call_id=record.call_id,
            rep_id=record.rep_id,
            rep_name=record.rep_name,
            call_context=call_context,
            result=result,
        )

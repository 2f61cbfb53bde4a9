import json
import pytest
from unittest.mock import MagicMock

from openai import OpenAIError

from closer_coach.llm_scorer import LLMScorer, ResponseFormatError, extract_json
from closer_coach.schemas import (
    ALL_PHASES, CallContext, CallRecord, FALLBACK_FEEDBACK, TranscriptSegment
)


def completion(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def fake_client(*contents):
    """Client whose successive create() calls return (or raise) the given items"""
    client = MagicMock()
    client.chat.completions.create.side_effect = [
        c if isinstance(c, Exception) else completion(c) for c in contents
    ]
    return client


def scoring_payload(phases=ALL_PHASES, score=80, overall=99):
    return json.dumps({
        "overall_score": overall,
        "scores": [
            {
                "phase": p,
                "score": score,
                "feedback": f"{p} feedback",
                "highlights": ["Warm greeting"],
                "improvements": [],
                "quotes": [{"text": "Hi there", "sentiment": "positive", "timestamp": 3}],
            }
            for p in phases
        ],
        "objections_detected": [{
            "objection": "It's a lot of money",
            "category": "price",
            "handling_score": 70,
            "used_aaa": True,
            "rep_response": "Compared it to a private tutor",
            "outcome_after": "handled_well",
        }],
        "summary": "Solid call, rushed the close.",
    })


TRANSCRIPT = [
    TranscriptSegment(speaker="rep", text="Hi, this is Tom from MyEdSpace.", start_time=0, end_time=4),
    TranscriptSegment(speaker="prospect", text="Hi Tom, I booked a call.", start_time=4, end_time=7),
]


class TestExtractJson:
    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert extract_json('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_object(self):
        assert extract_json('Sure! {"a": {"b": 2}} Hope that helps') == {"a": {"b": 2}}

    def test_no_json(self):
        with pytest.raises(ResponseFormatError):
            extract_json("I cannot score this call.")

    def test_empty(self):
        with pytest.raises(ResponseFormatError):
            extract_json("")
        with pytest.raises(ResponseFormatError):
            extract_json(None)


class TestLLMScorer:
    def setup_method(self):
        self.client = fake_client(scoring_payload())
        self.scorer = LLMScorer(model="gpt-4o", client=self.client, retry_delay=0)

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ValueError):
            LLMScorer()

    def test_request_parameters(self):
        self.scorer.score_call(TRANSCRIPT)

        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "max_tokens" in kwargs
        assert "temperature" in kwargs
        assert kwargs["messages"][0]["role"] == "system"
        assert "[00:04] PROSPECT: Hi Tom, I booked a call." in kwargs["messages"][1]["content"]

    def test_reasoning_model_parameters(self):
        client = fake_client(scoring_payload())
        scorer = LLMScorer(model="o3-mini", client=client, retry_delay=0)

        scorer.score_call(TRANSCRIPT)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert "max_completion_tokens" in kwargs
        assert "max_tokens" not in kwargs
        assert "temperature" not in kwargs

    def test_model_prefix_lookup(self):
        scorer = LLMScorer(model="gpt-4o-mini-2024-07-18", client=MagicMock())

        assert scorer.model_config["description"] == "Cost-effective GPT-4o variant"

    def test_successful_scoring(self):
        result = self.scorer.score_call(TRANSCRIPT)

        assert [s.phase for s in result.scores] == list(ALL_PHASES)
        # Overall score is recomputed, not taken from the model
        assert result.overall_score == 80.0
        assert result.objections_detected[0].category == "price"
        assert result.summary == "Solid call, rushed the close."
        assert result.llm_model == "gpt-4o"
        assert not result.is_fallback
        assert self.client.chat.completions.create.call_count == 1

    def test_retry_after_invalid_json(self):
        client = fake_client("not json at all", scoring_payload())
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert client.chat.completions.create.call_count == 2
        assert result.overall_score == 80.0

    def test_schema_violation_is_retried_then_falls_back(self):
        bad = scoring_payload(score=150)
        client = fake_client(bad, bad, bad)
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert client.chat.completions.create.call_count == 3
        assert result.is_fallback
        assert result.overall_score == 0
        assert all(s.feedback == FALLBACK_FEEDBACK and s.score == 0 for s in result.scores)
        assert len(result.scores) == len(ALL_PHASES)
        assert result.objections_detected == []

    def test_service_errors_fall_back(self):
        client = fake_client(OpenAIError("boom"), OpenAIError("boom"), OpenAIError("boom"))
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert result.is_fallback

    def test_retry_backoff(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr("closer_coach.llm_scorer.time.sleep", sleeps.append)
        client = fake_client(OpenAIError("a"), OpenAIError("b"), OpenAIError("c"))
        scorer = LLMScorer(client=client, retry_delay=1.0)

        scorer.score_call(TRANSCRIPT)

        assert sleeps == [1.0, 2.0]

    def test_empty_transcript_skips_service(self):
        result = self.scorer.score_call([])

        assert result.is_fallback
        assert self.client.chat.completions.create.call_count == 0

    def test_excluded_phases_are_dropped(self):
        result = self.scorer.score_call(TRANSCRIPT, context=CallContext.WARM_LEAD)

        assert [s.phase for s in result.scores] == [
            "opening", "sell_vacation", "price_presentation", "explain", "reinforce"
        ]
        assert result.call_context == CallContext.WARM_LEAD

    def test_warm_lead_fallback_has_retained_phases_only(self):
        client = fake_client("x", "x", "x")
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT, context="follow_up")

        assert len(result.scores) == 5
        assert result.is_fallback

    def test_duplicate_and_missing_phases(self):
        client = fake_client(scoring_payload(phases=["opening", "opening", "overview"]))
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert [s.phase for s in result.scores] == ["opening", "overview"]
        assert result.overall_score == 80.0

    def test_score_record(self):
        record = CallRecord(
            call_id="c1", rep_id="r1", rep_name="Tom", source="plaintext",
            call_context=CallContext.BOOKED_CALL, segments=TRANSCRIPT,
        )

        scored = self.scorer.score_record(record)

        assert scored.call_id == "c1"
        assert scored.rep_name == "Tom"
        assert scored.call_context == CallContext.BOOKED_CALL
        assert scored.result.call_context == CallContext.BOOKED_CALL

    def test_model_info(self):
        info = self.scorer.get_model_info()

        assert info["model"] == "gpt-4o"
        assert info["max_attempts"] == 3

    def test_empty_choices_fall_back(self):
        empty = MagicMock()
        empty.choices = []
        client = MagicMock()
        client.chat.completions.create.return_value = empty
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert result.is_fallback
        assert client.chat.completions.create.call_count == 3

    def test_non_openai_errors_fall_back(self):
        client = fake_client(ConnectionError("reset by peer"), TimeoutError("slow"), Exception("boom"))
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert result.is_fallback
        assert client.chat.completions.create.call_count == 3

    def test_recovers_after_transport_error(self):
        client = fake_client(ConnectionError("reset by peer"), scoring_payload())
        scorer = LLMScorer(client=client, retry_delay=0)

        result = scorer.score_call(TRANSCRIPT)

        assert not result.is_fallback
        assert result.overall_score == 80.0

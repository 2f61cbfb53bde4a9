import csv
import json
import pytest
from pathlib import Path

from closer_coach.scoring import (
    PHASE_WEIGHTS, OutputGenerator, calculate_overall_score, get_score_level, round_half_up
)
from closer_coach.schemas import (
    ALL_PHASES, CallContext, FALLBACK_FEEDBACK, Objection, PhaseScore, ScoredCall, ScoringResult
)


def phase(name, score, feedback="Solid"):
    return PhaseScore(phase=name, score=score, feedback=feedback)


def scored_call(call_id, scores, rep_name="Tom", summary="Good call", objections=None,
                context=CallContext.NEW_LEAD):
    result = ScoringResult(
        overall_score=calculate_overall_score(scores),
        scores=scores,
        summary=summary,
        call_context=context,
    )
    return ScoredCall(
        call_id=call_id,
        rep_name=rep_name,
        call_context=context,
        result=result,
        objections=objections or [],
    )


class TestOverallScore:
    def test_weights_sum_to_one(self):
        assert set(PHASE_WEIGHTS) == set(ALL_PHASES)
        assert sum(PHASE_WEIGHTS.values()) == pytest.approx(1.0)

    def test_uniform_scores(self):
        scores = [phase(p, 80) for p in ALL_PHASES]

        assert calculate_overall_score(scores) == 80.0

    def test_weighted_mean(self):
        scores = [phase(p, 100 if p == "overview" else 50) for p in ALL_PHASES]

        # overview carries 20% of the weight
        assert calculate_overall_score(scores) == 60.0

    def test_renormalised_over_present_phases(self):
        scores = [phase("opening", 100), phase("sell_vacation", 50)]

        assert calculate_overall_score(scores) == 70.0

    def test_rounded_to_one_decimal(self):
        scores = [phase("opening", 70), phase("clarify", 80)]

        assert calculate_overall_score(scores) == 75.5

    def test_empty(self):
        assert calculate_overall_score([]) == 0.0

    def test_round_half_up(self):
        assert round_half_up(2.5, 0) == 3
        assert round_half_up(66.666, 0) == 67
        assert round_half_up(0.25) == 0.3


class TestScoreLevel:
    def test_boundaries(self):
        assert get_score_level(85) == "excellent"
        assert get_score_level(84.9) == "good"
        assert get_score_level(70) == "good"
        assert get_score_level(50) == "needs_work"
        assert get_score_level(49.9) == "poor"


class TestOutputGenerator:
    def setup_method(self):
        self.generator = OutputGenerator()
        self.objection = Objection(objection="Too expensive", category="price", handling_score=60)
        self.results = [
            scored_call("call-1", [phase(p, 90) for p in ALL_PHASES], objections=[self.objection]),
            scored_call(
                "call-2",
                [phase(p, 40) for p in ALL_PHASES if p not in ("clarify", "label", "overview")],
                rep_name="Ana",
                context=CallContext.WARM_LEAD,
            ),
            scored_call("call-3", [phase(p, 0, FALLBACK_FEEDBACK) for p in ALL_PHASES], rep_name=None),
        ]

    def test_json_output(self, tmp_path):
        output = tmp_path / "scores.json"

        self.generator.generate_json_output(self.results, output)

        data = json.loads(output.read_text())
        assert [d["call_id"] for d in data] == ["call-1", "call-2", "call-3"]
        assert data[1]["call_context"] == "warm_lead"

    def test_csv_output(self, tmp_path):
        output = tmp_path / "scores.csv"

        self.generator.generate_csv_output(self.results, output)

        with open(output, newline='') as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 3
        assert rows[0]["overall_score"] == "90.0"
        assert rows[0]["level"] == "excellent"
        assert rows[0]["objection_count"] == "1"
        # Excluded phases are left blank
        assert rows[1]["clarify_score"] == ""
        assert rows[1]["opening_score"] == "40.0"
        assert rows[2]["fallback"] == "True"

    def test_leaderboard(self, tmp_path):
        output = tmp_path / "leaderboard.md"

        self.generator.generate_leaderboard(self.results, output)

        content = output.read_text()
        assert "**Total Calls Scored**: 3" in content
        assert "**Analysed Successfully**: 2" in content
        assert "| 1 | call-1 | Tom |" in content
        assert "N/A" in content
        assert "### call-2 - Ana (40.0)" in content
        assert "### call-3" not in content

    def test_no_results_writes_nothing(self, tmp_path):
        output = tmp_path / "leaderboard.md"

        self.generator.generate_leaderboard([], output)
        self.generator.generate_csv_output([], tmp_path / "scores.csv")

        assert not output.exists()
        assert not (tmp_path / "scores.csv").exists()

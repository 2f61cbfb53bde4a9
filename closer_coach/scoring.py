import json
import csv
import math
from pathlib import Path
from typing import List, Iterable
from datetime import date, datetime

from .schemas import PhaseScore, ScoredCall, ALL_PHASES, PHASE_NAMES


PHASE_WEIGHTS = {
    "opening": 0.10,
    "clarify": 0.12,
    "label": 0.08,
    "overview": 0.20,
    "sell_vacation": 0.15,
    "price_presentation": 0.15,
    "explain": 0.10,
    "reinforce": 0.10,
}


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def calculate_overall_score(scores: Iterable[PhaseScore]) -> float:
    """Weighted mean over the phases present, renormalised so excluded phases don't drag it down"""
    weighted_sum = 0.0
    total_weight = 0.0
    for score in scores:
        weight = PHASE_WEIGHTS.get(score.phase, 1 / len(ALL_PHASES))
        weighted_sum += score.score * weight
        total_weight += weight

    if total_weight == 0:
        return 0.0
    return round_half_up(weighted_sum / total_weight)


def get_score_level(score: float) -> str:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "needs_work"
    return "poor"


class OutputGenerator:
    def __init__(self):
        pass

    def generate_json_output(self, results: List[ScoredCall], output_path: Path):
        output_data = [result.model_dump(mode='json') for result in results]

        with open(output_path, 'w') as f:
            json.dump(output_data, f, indent=2, default=self._json_serializer)

    def generate_csv_output(self, results: List[ScoredCall], output_path: Path):
        if not results:
            return

        with open(output_path, 'w', newline='') as f:
            writer = csv.writer(f)

            writer.writerow(
                ['call_id', 'rep_name', 'call_context', 'overall_score', 'level', 'fallback']
                + [f'{phase}_score' for phase in ALL_PHASES]
                + ['objection_count', 'summary']
            )

            for scored in results:
                phase_scores = {s.phase: s.score for s in scored.result.scores}
                writer.writerow(
                    [
                        scored.call_id,
                        scored.rep_name or '',
                        scored.call_context.value,
                        scored.result.overall_score,
                        get_score_level(scored.result.overall_score),
                        scored.result.is_fallback,
                    ]
                    + [phase_scores.get(phase, '') for phase in ALL_PHASES]
                    + [len(scored.objections), scored.result.summary]
                )

    def generate_leaderboard(self, results: List[ScoredCall], output_path: Path):
        if not results:
            return

        ranked = sorted(results, key=lambda r: r.result.overall_score, reverse=True)
        analysed = [r for r in ranked if not r.result.is_fallback]
        avg_score = sum(r.result.overall_score for r in analysed) / len(analysed) if analysed else 0

        level_counts = {'excellent': 0, 'good': 0, 'needs_work': 0, 'poor': 0}
        for r in analysed:
            level_counts[get_score_level(r.result.overall_score)] += 1

        markdown_content = f"""# CLOSER Coach - Call Leaderboard

## Summary Statistics
- **Total Calls Scored**: {len(results)}
- **Analysed Successfully**: {len(analysed)}
- **Average Score**: {avg_score:.1f}

## Score Distribution
- **Excellent** (85+): {level_counts['excellent']}
- **Good** (70-84): {level_counts['good']}
- **Needs work** (50-69): {level_counts['needs_work']}
- **Poor** (<50): {level_counts['poor']}

## Ranked Results

| Rank | Call ID | Rep | Context | Score | {' | '.join(PHASE_NAMES[p].split(' ')[0] for p in ALL_PHASES)} |
|------|---------|-----|---------|-------|{'|'.join('---' for _ in ALL_PHASES)}|
"""

        for i, scored in enumerate(ranked, 1):
            phase_scores = {s.phase: s.score for s in scored.result.scores}
            cells = ' | '.join(
                f"{phase_scores[p]:.0f}" if p in phase_scores else '-' for p in ALL_PHASES
            )
            score = 'N/A' if scored.result.is_fallback else f"**{scored.result.overall_score}**"
            markdown_content += f"| {i} | {scored.call_id} | {scored.rep_name or 'Unknown'} | {scored.call_context.value} | {score} | {cells} |\n"

        markdown_content += "\n\n## Coaching Detail\n\n"

        for scored in analysed:
            markdown_content += f"""### {scored.call_id} - {scored.rep_name or 'Unknown Rep'} ({scored.result.overall_score})

{scored.result.summary}

"""
            for phase_score in scored.result.scores:
                markdown_content += f"- **{PHASE_NAMES[phase_score.phase]}** ({phase_score.score:.0f}): {phase_score.feedback}\n"

            markdown_content += "\n---\n\n"

        with open(output_path, 'w') as f:
            f.write(markdown_content)

    def _json_serializer(self, obj):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

import os
import re
import json
import logging
from pathlib import Path
from typing import List, Dict, Optional, Pattern

from .schemas import RawSegment, TranscriptSegment

logger = logging.getLogger(__name__)


DEFAULT_PATTERNS_FILE = Path(__file__).parent / "data" / "speaker_patterns.json"

ROLE_HINTS = ("default", "caller", "callee")

CONTENT_WEIGHT = 10
EXPLICIT_LABEL_WEIGHT = 100


class PatternTables:
    """Compiled speaker heuristics loaded from the JSON pattern file"""

    def __init__(self, data: Dict):
        labels = data.get("explicit_labels", {})
        self.explicit_rep: List[str] = [w.upper() for w in labels.get("rep", [])]
        self.explicit_prospect: List[str] = [w.upper() for w in labels.get("prospect", [])]

        first = data.get("first_speaker", {})
        self.prospect_opening = self._compile_one(first.get("prospect_opening"))
        self.rep_introduction = self._compile_one(first.get("rep_introduction"))

        self.content: Dict[str, Dict[str, List[Pattern]]] = {}
        for name, sets in data.get("content", {}).items():
            self.content[name] = {
                "rep": [re.compile(p, re.IGNORECASE) for p in sets.get("rep", [])],
                "prospect": [re.compile(p, re.IGNORECASE) for p in sets.get("prospect", [])],
            }

        if "default" not in self.content:
            raise ValueError("Speaker pattern file must define a 'default' content set")

    @staticmethod
    def _compile_one(pattern: Optional[str]) -> Optional[Pattern]:
        return re.compile(pattern, re.IGNORECASE) if pattern else None

    def content_set(self, role_hint: Optional[str] = None) -> Dict[str, List[Pattern]]:
        if role_hint and role_hint in self.content:
            return self.content[role_hint]
        if role_hint and role_hint != "default":
            logger.warning(f"Unknown role hint '{role_hint}', using default patterns")
        return self.content["default"]


_tables_cache: Dict[str, PatternTables] = {}


def load_pattern_tables(path: Optional[Path] = None) -> PatternTables:
    """Load pattern tables from path, SPEAKER_PATTERNS_FILE, or the bundled file"""
    if path is None:
        env_path = os.getenv("SPEAKER_PATTERNS_FILE")
        path = Path(env_path) if env_path else DEFAULT_PATTERNS_FILE

    key = str(Path(path).resolve())
    if key not in _tables_cache:
        with open(path, "r", encoding="utf-8") as f:
            _tables_cache[key] = PatternTables(json.load(f))
        logger.debug(f"Loaded speaker patterns from {path}")
    return _tables_cache[key]


def matches_any(patterns: List[Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def prospect_speaks_first(first_line: str, tables: Optional[PatternTables] = None) -> bool:
    """Sniff an unlabeled opening line: greeting or interest without a self-introduction"""
    tables = tables or load_pattern_tables()
    if tables.prospect_opening is None or not tables.prospect_opening.search(first_line):
        return False
    if tables.rep_introduction is not None and tables.rep_introduction.search(first_line):
        return False
    return True


class SpeakerRoleResolver:
    """Decides which raw speaker label belongs to the rep.

    Every label starts at zero. Each of its segments adds CONTENT_WEIGHT when it
    reads like the rep and subtracts it when it reads like the prospect. Labels
    naming a role outright ("Agent", "Parent 1") then move by
    EXPLICIT_LABEL_WEIGHT, which always outweighs content. The top score is the
    rep; on a tie the label seen first wins.
    """

    def __init__(self, role_hint: Optional[str] = None, tables: Optional[PatternTables] = None):
        self.tables = tables or load_pattern_tables()
        self.role_hint = role_hint or "default"
        self.patterns = self.tables.content_set(self.role_hint)

    def score_labels(self, raw_segments: List[RawSegment]) -> Dict[str, int]:
        scores: Dict[str, int] = {}
        for segment in raw_segments:
            scores.setdefault(segment.raw_label, 0)
            if matches_any(self.patterns["rep"], segment.text):
                scores[segment.raw_label] += CONTENT_WEIGHT
            if matches_any(self.patterns["prospect"], segment.text):
                scores[segment.raw_label] -= CONTENT_WEIGHT

        for label in scores:
            normalized = re.sub(r"\d+", "", label).strip().upper()
            if any(word in normalized for word in self.tables.explicit_rep):
                scores[label] += EXPLICIT_LABEL_WEIGHT
            if any(word in normalized for word in self.tables.explicit_prospect):
                scores[label] -= EXPLICIT_LABEL_WEIGHT

        return scores

    def resolve(self, raw_segments: List[RawSegment]) -> Dict[str, str]:
        scores = self.score_labels(raw_segments)
        if not scores:
            return {}

        rep_label = None
        for label, score in scores.items():
            if rep_label is None or score > scores[rep_label]:
                rep_label = label

        mapping = {label: ("rep" if label == rep_label else "prospect") for label in scores}
        logger.debug(f"Speaker label scores: {scores}")
        logger.debug(f"Speaker mapping: {mapping}")
        return mapping


def apply(raw_segments: List[RawSegment], mapping: Dict[str, str]) -> List[TranscriptSegment]:
    """Build resolved segments; labels missing from mapping alternate by position"""
    segments = []
    for index, raw in enumerate(raw_segments):
        speaker = mapping.get(raw.raw_label) or ("rep" if index % 2 == 0 else "prospect")
        end_time = raw.end_time if raw.end_time is not None else raw.start_time
        segments.append(TranscriptSegment(
            speaker=speaker,
            text=raw.text,
            start_time=raw.start_time,
            end_time=max(end_time, raw.start_time),
        ))
    return segments


def swap_speakers(segments: List[TranscriptSegment]) -> List[TranscriptSegment]:
    """Flip every rep/prospect attribution, for manual correction"""
    return [
        s.model_copy(update={"speaker": "prospect" if s.speaker == "rep" else "rep"})
        for s in segments
    ]
